############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Request lifecycle package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request lifecycle state machine."""

from tandem.app.core.lifecycle.controller import RequestController, StateChange
from tandem.app.core.lifecycle.states import (
    STRUCTURED_MODES,
    TERMINAL_STATES,
    TRANSITIONS,
    ControllerEvent,
    RequestContext,
    RequestState,
    WorkloadMode,
)

__all__ = [
    "ControllerEvent",
    "RequestContext",
    "RequestController",
    "RequestState",
    "STRUCTURED_MODES",
    "StateChange",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "WorkloadMode",
]
