############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# capacity.py: VRAM budget, thermal advisory and model recommendation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Capacity telemetry: cached snapshots, fit checks and thermal bands."""

import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from tandem.app.core.arbiter.profiles import AcceleratorProfile, ThermalThresholds
from tandem.app.core.telemetry import metrics
from tandem.app.core.telemetry.models import CapacitySnapshot
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

CapacityProbe = Callable[[], Awaitable[Optional[CapacitySnapshot]]]


class ThermalStatus(str, Enum):
    NOMINAL = "nominal"
    WARM = "warm"
    HOT = "hot"
    CRITICAL = "critical"


_RECOMMENDATIONS = {
    ThermalStatus.NOMINAL: "All models available",
    ThermalStatus.WARM: "Prefer 14B models over 24B for sustained workloads",
    ThermalStatus.HOT: "Use kuro-scout (8B) only. Avoid long generations.",
    ThermalStatus.CRITICAL: "GPU thermal throttling active. Minimal inference only.",
}


@dataclass(frozen=True)
class ThermalAdvisory:
    status: ThermalStatus
    temperature_c: float
    recommendation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "temperature_c": self.temperature_c,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class FitResult:
    fits: bool
    needed_mb: int
    available_mb: int
    deficit_mb: int
    accelerator: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ModelRecommendation:
    model: Optional[str]
    reason: str  # requested_fits, vram_downgrade, no_model_fits
    requested: str
    fit: FitResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "reason": self.reason,
            "requested": self.requested,
            "fit": self.fit.to_dict(),
        }


def classify_thermal(temperature_c: float, thresholds: ThermalThresholds) -> ThermalAdvisory:
    """Map a temperature onto its thermal band."""
    if temperature_c < thresholds.nominal:
        status = ThermalStatus.NOMINAL
    elif temperature_c < thresholds.warm:
        status = ThermalStatus.WARM
    elif temperature_c < thresholds.hot:
        status = ThermalStatus.HOT
    else:
        status = ThermalStatus.CRITICAL
    return ThermalAdvisory(
        status=status,
        temperature_c=temperature_c,
        recommendation=_RECOMMENDATIONS[status],
    )


def compute_fit(snapshot: CapacitySnapshot, profile: AcceleratorProfile, model_id: str) -> FitResult:
    """Check whether ``model_id`` fits in free VRAM less the safety margin."""
    needed = profile.footprint(model_id)
    usable = snapshot.vram_free_mb - profile.safety_margin_mb
    return FitResult(
        fits=needed <= usable,
        needed_mb=needed,
        available_mb=max(0, usable),
        deficit_mb=max(0, needed - usable),
        accelerator=snapshot.name,
    )


def default_snapshot(profile: AcceleratorProfile, error: str) -> CapacitySnapshot:
    """Optimistic figures used when telemetry is unavailable."""
    return CapacitySnapshot(
        vram_total_mb=profile.vram_total_mb,
        vram_used_mb=0,
        vram_free_mb=profile.vram_total_mb,
        temperature_c=0.0,
        name=f"{profile.name} (query failed)",
        error=error,
    )


class CapacityMonitor:
    """Caches capacity snapshots from a probe for ``ttl_seconds``."""

    def __init__(
        self,
        profile: AcceleratorProfile,
        probe: Optional[CapacityProbe] = None,
        ttl_seconds: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self._probe = probe
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: Optional[CapacitySnapshot] = None
        self._cached_at = 0.0

    def invalidate(self) -> None:
        self._cached = None

    async def snapshot(self, force: bool = False) -> CapacitySnapshot:
        now = self._clock()
        if not force and self._cached is not None and now - self._cached_at < self._ttl:
            return self._cached

        snapshot: Optional[CapacitySnapshot] = None
        error = "no capacity probe configured"
        if self._probe is not None:
            try:
                snapshot = await self._probe()
                error = "gpu agent unavailable"
            except Exception as e:
                logger.warning("capacity_probe_failed", error=str(e))
                error = str(e)

        if snapshot is None:
            # Failed probes are not cached so the next call retries
            return default_snapshot(self.profile, error)

        self._cached = snapshot
        self._cached_at = now
        metrics.ACCELERATOR_TEMPERATURE.set(snapshot.temperature_c)
        metrics.ACCELERATOR_VRAM_FREE.set(snapshot.vram_free_mb)
        return snapshot
