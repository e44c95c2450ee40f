############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# models.py: Telemetry data models for the shared accelerator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Telemetry data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass
class LoadedModel:
    """A model currently resident on the text sidecar."""

    name: str
    size_mb: int = 0
    vram_mb: int = 0
    expires_at: Optional[str] = None


@dataclass
class GPUDeviceSnapshot:
    """Per-device snapshot reported by the GPU agent."""

    index: int = 0
    name: Optional[str] = None
    uuid: Optional[str] = None
    memory_total_mb: Optional[int] = None
    memory_used_mb: Optional[int] = None
    memory_free_mb: Optional[int] = None
    utilization_gpu: Optional[float] = None
    utilization_memory: Optional[float] = None
    temperature_gpu: Optional[float] = None
    power_draw_watts: Optional[float] = None
    power_limit_watts: Optional[float] = None
    fan_speed_percent: Optional[float] = None


@dataclass
class SidecarResponse:
    """Full response from the GPU agent."""

    hostname: Optional[str] = None
    driver_version: Optional[str] = None
    cuda_version: Optional[str] = None
    gpu_count: int = 0
    gpus: List[GPUDeviceSnapshot] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CapacitySnapshot:
    """Point-in-time telemetry for the shared accelerator.

    VRAM figures are MiB. ``error`` is set when the agent could not be
    queried and the figures are the profile's optimistic defaults.
    """

    vram_total_mb: int
    vram_used_mb: int
    vram_free_mb: int
    temperature_c: float = 0.0
    power_w: float = 0.0
    utilization_pct: float = 0.0
    name: str = "unknown"
    error: Optional[str] = None
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def vram_percent(self) -> int:
        if self.vram_total_mb <= 0:
            return 0
        return round(self.vram_used_mb / self.vram_total_mb * 100)

    @classmethod
    def from_device(cls, device: GPUDeviceSnapshot) -> "CapacitySnapshot":
        """Build a snapshot from the agent's device entry, tolerating gaps."""
        total = device.memory_total_mb or 0
        used = device.memory_used_mb or 0
        free = device.memory_free_mb
        if free is None:
            free = max(0, total - used)
        return cls(
            vram_total_mb=total,
            vram_used_mb=used,
            vram_free_mb=free,
            temperature_c=float(device.temperature_gpu or 0),
            power_w=float(device.power_draw_watts or 0),
            utilization_pct=float(device.utilization_gpu or 0),
            name=device.name or "unknown",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sampled_at"] = self.sampled_at.isoformat()
        data["vram_percent"] = self.vram_percent
        return data
