############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# arbiter.py: Process-wide mutual exclusion over the shared accelerator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Accelerator arbiter.

The text sidecar and the diffusion sidecar share one accelerator and
cannot both be resident. The arbiter time-shares it: the first acquirer
wins, anyone else gets a busy result, and taking the lock evicts the
models of the other workload class. There is no queue and no watchdog;
a lock held past its timeout is force-released by the next acquirer.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from tandem.app.core.arbiter.capacity import (
    CapacityMonitor,
    CapacityProbe,
    FitResult,
    ModelRecommendation,
    ThermalAdvisory,
    ThermalStatus,
    classify_thermal,
    compute_fit,
)
from tandem.app.core.arbiter.profiles import AcceleratorProfile, WorkloadClass
from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.telemetry import metrics
from tandem.app.core.telemetry.models import CapacitySnapshot
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

Evictor = Callable[[], Awaitable[List[str]]]

AUDIT_COMPONENT = "accelerator"


@dataclass(frozen=True)
class AcceleratorLock:
    holder_id: str
    workload: WorkloadClass
    acquired_at: float  # arbiter clock
    timeout_s: float


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    reason: Optional[str] = None
    holder: Optional[str] = None
    elapsed_ms: Optional[int] = None
    mode: Optional[str] = None
    reentrant: bool = False
    evicted: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReleaseResult:
    released: bool
    held_ms: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    holder: Optional[str] = None
    workload: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked": self.locked,
            "holder": self.holder,
            "workload": self.workload,
            "elapsed_ms": self.elapsed_ms,
        }


class AcceleratorBusy(Exception):
    """Raised by ``lease`` when the accelerator could not be acquired."""

    def __init__(self, result: AcquireResult):
        super().__init__(result.reason or "accelerator busy")
        self.result = result


class AcceleratorArbiter:
    """
    Process-wide arbiter for the shared accelerator.

    The lock is only reachable through ``acquire``, ``release``,
    ``is_locked``/``lock_status`` and ``lease``. Capacity telemetry and
    the advisory helpers share the same cached snapshot.
    """

    def __init__(
        self,
        profile: AcceleratorProfile,
        capacity_probe: Optional[CapacityProbe] = None,
        lock_timeout_s: float = 120.0,
        capacity_ttl_s: float = 3.0,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.lock_timeout_s = lock_timeout_s
        self._clock = clock
        self._audit = audit
        self._lock: Optional[AcceleratorLock] = None
        self._evictors: Dict[WorkloadClass, Evictor] = {}
        self.capacity = CapacityMonitor(
            profile, probe=capacity_probe, ttl_seconds=capacity_ttl_s, clock=clock
        )

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    def register_evictor(self, workload: WorkloadClass, evictor: Evictor) -> None:
        """Register the coroutine that frees VRAM held by ``workload``'s sidecar."""
        self._evictors[workload] = evictor

    def _elapsed_ms(self, lock: AcceleratorLock) -> int:
        return int((self._clock() - lock.acquired_at) * 1000)

    def is_locked(self) -> bool:
        return self._lock is not None

    def holds_lock(self, request_id: str) -> bool:
        return self._lock is not None and self._lock.holder_id == request_id

    def lock_status(self) -> LockStatus:
        lock = self._lock
        if lock is None:
            return LockStatus(locked=False)
        return LockStatus(
            locked=True,
            holder=lock.holder_id,
            workload=lock.workload.value,
            elapsed_ms=self._elapsed_ms(lock),
        )

    async def acquire(
        self,
        request_id: str,
        workload: WorkloadClass,
        heavy: bool = True,
    ) -> AcquireResult:
        """
        Try to take the accelerator for ``request_id``.

        Heavy requests are refused while the accelerator is thermally
        critical. A request that already holds the lock re-enters without
        eviction. Never waits for the lock.
        """
        if heavy:
            advisory = await self.thermal_advisory()
            if advisory.status is ThermalStatus.CRITICAL:
                metrics.LOCK_ACQUISITIONS.labels(workload=workload.value, outcome="thermal").inc()
                logger.warning(
                    "accelerator_thermal_denial",
                    request_id=request_id,
                    temperature_c=advisory.temperature_c,
                )
                return AcquireResult(
                    acquired=False,
                    reason=f"thermal_critical: {advisory.recommendation}",
                )

        # No await between the lock check and the lock set
        current = self._lock
        if current is not None:
            if current.holder_id == request_id:
                metrics.LOCK_ACQUISITIONS.labels(workload=workload.value, outcome="reentrant").inc()
                return AcquireResult(acquired=True, mode="timeshare", reentrant=True)

            elapsed_ms = self._elapsed_ms(current)
            if elapsed_ms > current.timeout_s * 1000:
                logger.warning(
                    "stale_lock_forced_release",
                    holder=current.holder_id,
                    elapsed_ms=elapsed_ms,
                    new_holder=request_id,
                )
                self.audit.record(
                    AUDIT_COMPONENT,
                    "gpu_force_release",
                    {
                        "request_id": current.holder_id,
                        "elapsed_ms": elapsed_ms,
                        "forced_by": request_id,
                    },
                )
                metrics.LOCK_ACQUISITIONS.labels(workload=workload.value, outcome="forced").inc()
                self.release(current.holder_id)
            else:
                metrics.LOCK_ACQUISITIONS.labels(workload=workload.value, outcome="busy").inc()
                return AcquireResult(
                    acquired=False,
                    reason=(
                        f"accelerator locked by request {current.holder_id} "
                        f"({elapsed_ms // 1000}s ago)"
                    ),
                    holder=current.holder_id,
                    elapsed_ms=elapsed_ms,
                )

        self._lock = AcceleratorLock(
            holder_id=request_id,
            workload=workload,
            acquired_at=self._clock(),
            timeout_s=self.lock_timeout_s,
        )
        metrics.LOCK_HELD.set(1)
        metrics.LOCK_ACQUISITIONS.labels(workload=workload.value, outcome="acquired").inc()

        evicted = await self._evict(workload.other)
        self.capacity.invalidate()

        self.audit.record(
            AUDIT_COMPONENT,
            "gpu_acquire",
            {
                "request_id": request_id,
                "workload": workload.value,
                "mode": "timeshare",
                "evicted": evicted,
            },
        )
        logger.info(
            "accelerator_acquired",
            request_id=request_id,
            workload=workload.value,
            evicted=evicted,
        )
        return AcquireResult(acquired=True, mode="timeshare", evicted=evicted)

    async def _evict(self, workload: WorkloadClass) -> List[str]:
        evictor = self._evictors.get(workload)
        if evictor is None:
            return []
        try:
            evicted = list(await evictor())
        except Exception as e:
            # Eviction is best effort; the sidecar may already be idle
            logger.warning("eviction_failed", workload=workload.value, error=str(e))
            return []
        if evicted:
            metrics.EVICTIONS.labels(workload=workload.value).inc(len(evicted))
        return evicted

    def release(self, request_id: str) -> ReleaseResult:
        """Release the lock. Only the holder can release; anyone else is a no-op."""
        current = self._lock
        if current is None or current.holder_id != request_id:
            return ReleaseResult(released=False, reason="not_lock_holder")

        held_ms = self._elapsed_ms(current)
        self._lock = None
        metrics.LOCK_HELD.set(0)
        metrics.LOCK_HOLD_SECONDS.observe(held_ms / 1000)
        self.audit.record(
            AUDIT_COMPONENT,
            "gpu_release",
            {"request_id": request_id, "workload": current.workload.value, "held_ms": held_ms},
        )
        logger.info("accelerator_released", request_id=request_id, held_ms=held_ms)
        return ReleaseResult(released=True, held_ms=held_ms)

    @asynccontextmanager
    async def lease(
        self,
        request_id: str,
        workload: WorkloadClass,
        heavy: bool = True,
    ) -> AsyncIterator[AcquireResult]:
        """Hold the accelerator for the duration of a block.

        Raises:
            AcceleratorBusy: if the lock could not be acquired
        """
        result = await self.acquire(request_id, workload, heavy=heavy)
        if not result.acquired:
            raise AcceleratorBusy(result)
        try:
            yield result
        finally:
            # A re-entrant lease leaves the outer hold in place
            if not result.reentrant:
                self.release(request_id)

    async def capacity_snapshot(self, force: bool = False) -> CapacitySnapshot:
        return await self.capacity.snapshot(force=force)

    async def thermal_advisory(self) -> ThermalAdvisory:
        snapshot = await self.capacity_snapshot()
        return classify_thermal(snapshot.temperature_c, self.profile.thermal)

    async def can_fit(self, model_id: str) -> FitResult:
        snapshot = await self.capacity_snapshot()
        return compute_fit(snapshot, self.profile, model_id)

    async def loadable_models(self) -> Dict[str, Any]:
        """Fit table for every model with a known footprint."""
        snapshot = await self.capacity_snapshot()
        available = snapshot.vram_free_mb - self.profile.safety_margin_mb
        models = {
            model_id: {
                "fits": vram <= available,
                "vram_mb": vram,
                "headroom_mb": available - vram,
            }
            for model_id, vram in self.profile.model_footprints_mb.items()
        }
        return {"available_mb": available, "models": models}

    async def recommend_model(self, requested: str) -> ModelRecommendation:
        """The requested model if it fits, else the first fitting fallback."""
        snapshot = await self.capacity_snapshot()
        fit = compute_fit(snapshot, self.profile, requested)
        if fit.fits:
            return ModelRecommendation(model=requested, reason="requested_fits", requested=requested, fit=fit)

        for fallback in self.profile.fallback_chain:
            fallback_fit = compute_fit(snapshot, self.profile, fallback)
            if fallback_fit.fits:
                return ModelRecommendation(
                    model=fallback,
                    reason="vram_downgrade",
                    requested=requested,
                    fit=fallback_fit,
                )

        return ModelRecommendation(model=None, reason="no_model_fits", requested=requested, fit=fit)


# Global arbiter instance
_arbiter: Optional[AcceleratorArbiter] = None


def get_arbiter() -> AcceleratorArbiter:
    """Get the global arbiter instance."""
    if _arbiter is None:
        raise RuntimeError("Accelerator arbiter has not been initialized")
    return _arbiter


def init_arbiter(
    profile: AcceleratorProfile,
    capacity_probe: Optional[CapacityProbe] = None,
    evictors: Optional[Dict[WorkloadClass, Evictor]] = None,
    lock_timeout_s: float = 120.0,
    capacity_ttl_s: float = 3.0,
) -> AcceleratorArbiter:
    """Create the global arbiter."""
    global _arbiter
    _arbiter = AcceleratorArbiter(
        profile,
        capacity_probe=capacity_probe,
        lock_timeout_s=lock_timeout_s,
        capacity_ttl_s=capacity_ttl_s,
    )
    for workload, evictor in (evictors or {}).items():
        _arbiter.register_evictor(workload, evictor)
    logger.info("accelerator_arbiter_initialized", profile=profile.name, lock_timeout_s=lock_timeout_s)
    return _arbiter


def shutdown_arbiter() -> None:
    """Drop the global arbiter."""
    global _arbiter
    _arbiter = None
