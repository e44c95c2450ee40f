############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# profiles.py: Accelerator profiles (footprints, thermal thresholds)
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Accelerator profiles.

A profile holds every hardware-specific constant the arbiter uses: the
total VRAM reported when telemetry is unavailable, per-model VRAM
footprints (MiB), the safety margin, thermal thresholds, the downgrade
chain and the names that eviction leaves resident.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Tuple


class WorkloadClass(str, Enum):
    """Which sidecar a request needs the accelerator for."""

    TEXT = "text"
    DIFFUSION = "diffusion"

    @property
    def other(self) -> "WorkloadClass":
        return WorkloadClass.DIFFUSION if self is WorkloadClass.TEXT else WorkloadClass.TEXT


@dataclass(frozen=True)
class ThermalThresholds:
    """Upper bounds (exclusive, degrees C) of each thermal band."""

    nominal: float = 70.0
    warm: float = 80.0
    hot: float = 87.0


# Quantized footprints, MiB
_DEFAULT_FOOTPRINTS: Dict[str, int] = {
    "kuro-core": 20000,  # 24B Q4
    "kuro-forge": 10000,  # 14B Q8
    "kuro-logic": 10000,  # 14B Q6
    "kuro-sentinel": 8000,
    "kuro-cipher": 10000,
    "kuro-phantom": 10000,
    "kuro-exe": 10000,
    "kuro-scout": 6000,  # 8B Q4
    "kuro-embed": 250,
    "flux-schnell": 8000,
    "flux-dev": 12000,
}


@dataclass(frozen=True)
class AcceleratorProfile:
    name: str
    vram_total_mb: int
    model_footprints_mb: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType(dict(_DEFAULT_FOOTPRINTS))
    )
    default_footprint_mb: int = 10000
    safety_margin_mb: int = 500
    thermal: ThermalThresholds = field(default_factory=ThermalThresholds)
    fallback_chain: Tuple[str, ...] = ("kuro-scout", "kuro-embed")
    eviction_exempt: Tuple[str, ...] = ("embed", "eye")

    def footprint(self, model_id: str) -> int:
        """VRAM needed by a model; unknown models get the default footprint."""
        return self.model_footprints_mb.get(model_id, self.default_footprint_mb)

    def is_eviction_exempt(self, model_name: str) -> bool:
        return any(token in model_name for token in self.eviction_exempt)


PROFILES: Dict[str, AcceleratorProfile] = {
    "rtx5090": AcceleratorProfile(name="NVIDIA GeForce RTX 5090", vram_total_mb=32607),
    "l4": AcceleratorProfile(name="NVIDIA L4", vram_total_mb=24576),
}


def get_profile(key: str) -> AcceleratorProfile:
    """Look up a profile by key (case-insensitive)."""
    try:
        return PROFILES[key.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown accelerator profile {key!r}; expected one of {sorted(PROFILES)}"
        ) from None
