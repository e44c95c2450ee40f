############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Accelerator arbitration package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Exclusive time-shared access to the single accelerator."""

from tandem.app.core.arbiter.arbiter import (
    AcceleratorArbiter,
    AcceleratorBusy,
    AcceleratorLock,
    AcquireResult,
    LockStatus,
    ReleaseResult,
    get_arbiter,
    init_arbiter,
    shutdown_arbiter,
)
from tandem.app.core.arbiter.capacity import (
    FitResult,
    ModelRecommendation,
    ThermalAdvisory,
    ThermalStatus,
)
from tandem.app.core.arbiter.profiles import (
    PROFILES,
    AcceleratorProfile,
    ThermalThresholds,
    WorkloadClass,
    get_profile,
)

__all__ = [
    "AcceleratorArbiter",
    "AcceleratorBusy",
    "AcceleratorLock",
    "AcceleratorProfile",
    "AcquireResult",
    "FitResult",
    "LockStatus",
    "ModelRecommendation",
    "PROFILES",
    "ReleaseResult",
    "ThermalAdvisory",
    "ThermalStatus",
    "ThermalThresholds",
    "WorkloadClass",
    "get_arbiter",
    "get_profile",
    "init_arbiter",
    "shutdown_arbiter",
]
