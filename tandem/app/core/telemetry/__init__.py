############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Telemetry package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Accelerator telemetry, sidecar adapters and metrics."""

from tandem.app.core.telemetry.models import CapacitySnapshot, LoadedModel

__all__ = [
    "CapacitySnapshot",
    "LoadedModel",
]
