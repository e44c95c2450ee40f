############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Sidecar adapters package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Sidecar adapters for the text, diffusion and GPU metrics services."""

from tandem.app.core.telemetry.adapters.diffusion import (
    FLUX_MODES,
    DiffusionClient,
    FluxMode,
    RenderResult,
    resolve_flux_mode,
)
from tandem.app.core.telemetry.adapters.errors import SidecarError
from tandem.app.core.telemetry.adapters.ollama import OllamaAdapter
from tandem.app.core.telemetry.adapters.sidecar_client import SidecarClient

__all__ = [
    "DiffusionClient",
    "FLUX_MODES",
    "FluxMode",
    "OllamaAdapter",
    "RenderResult",
    "SidecarClient",
    "SidecarError",
    "resolve_flux_mode",
]
