############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# states.py: Request lifecycle states, events and transition table
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request lifecycle states, events and the transition table."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Union


class RequestState(str, Enum):
    IDLE = "IDLE"
    SCANNING = "SCANNING"
    BLOCKED = "BLOCKED"
    ROUTING = "ROUTING"
    PLANNING = "PLANNING"
    VERIFYING = "VERIFYING"
    REPLANNING = "REPLANNING"
    SIMULATING = "SIMULATING"
    COMMITTING = "COMMITTING"
    EXECUTING = "EXECUTING"
    REPORTING = "REPORTING"
    ERROR = "ERROR"


class ControllerEvent(str, Enum):
    REQUEST_RECEIVED = "REQUEST_RECEIVED"
    SCAN_COMPLETE = "SCAN_COMPLETE"
    THREAT_DETECTED = "THREAT_DETECTED"
    ROUTE_COMPLETE = "ROUTE_COMPLETE"
    ADMISSION_DENIED = "ADMISSION_DENIED"
    PLAN_COMPLETE = "PLAN_COMPLETE"
    JUDGE_PASS = "JUDGE_PASS"
    JUDGE_FAIL = "JUDGE_FAIL"
    SIM_PASS = "SIM_PASS"
    SIM_FAIL = "SIM_FAIL"
    COMMIT_COMPLETE = "COMMIT_COMPLETE"
    EXECUTE_COMPLETE = "EXECUTE_COMPLETE"
    REPORT_COMPLETE = "REPORT_COMPLETE"
    ERROR = "ERROR"
    ABORT = "ABORT"


class WorkloadMode(str, Enum):
    """Workload flavor chosen by the upstream router."""

    MAIN = "main"
    DEV = "dev"
    VISION = "vision"


# Structured workloads go through plan/verify/commit instead of a single execute
STRUCTURED_MODES: FrozenSet[WorkloadMode] = frozenset({WorkloadMode.DEV, WorkloadMode.VISION})

# Reaching one of these releases any accelerator lock the request holds
TERMINAL_STATES: FrozenSet[RequestState] = frozenset(
    {RequestState.REPORTING, RequestState.ERROR, RequestState.BLOCKED}
)


@dataclass
class RequestContext:
    request_id: str
    workload_mode: WorkloadMode = WorkloadMode.MAIN
    retry_count: int = 0
    max_retries: int = 1
    start_time: float = 0.0
    last_error: Optional[str] = None
    aborted: bool = False
    options: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_structured(self) -> bool:
        return self.workload_mode in STRUCTURED_MODES


def _route(ctx: RequestContext) -> RequestState:
    return RequestState.PLANNING if ctx.is_structured else RequestState.EXECUTING


def _judge_fail(ctx: RequestContext) -> RequestState:
    if ctx.retry_count < ctx.max_retries:
        return RequestState.REPLANNING
    return RequestState.REPORTING


Target = Union[RequestState, Callable[[RequestContext], RequestState]]

S, E = RequestState, ControllerEvent

TRANSITIONS: Dict[RequestState, Dict[ControllerEvent, Target]] = {
    S.IDLE: {
        E.REQUEST_RECEIVED: S.SCANNING,
    },
    S.SCANNING: {
        E.SCAN_COMPLETE: S.ROUTING,
        E.THREAT_DETECTED: S.BLOCKED,
        E.ERROR: S.ERROR,
    },
    S.BLOCKED: {},
    S.ROUTING: {
        E.ROUTE_COMPLETE: _route,
        E.ADMISSION_DENIED: S.REPORTING,
        E.ERROR: S.ERROR,
    },
    S.PLANNING: {
        E.PLAN_COMPLETE: S.VERIFYING,
        E.ERROR: S.ERROR,
    },
    S.VERIFYING: {
        E.JUDGE_PASS: S.SIMULATING,
        E.JUDGE_FAIL: _judge_fail,
        E.ERROR: S.ERROR,
    },
    S.REPLANNING: {
        E.PLAN_COMPLETE: S.VERIFYING,
        E.ERROR: S.REPORTING,
    },
    S.SIMULATING: {
        E.SIM_PASS: S.COMMITTING,
        E.SIM_FAIL: S.REPORTING,
        E.ERROR: S.ERROR,
    },
    S.COMMITTING: {
        E.COMMIT_COMPLETE: S.REPORTING,
        E.ERROR: S.ERROR,
    },
    S.EXECUTING: {
        E.EXECUTE_COMPLETE: S.REPORTING,
        E.ERROR: S.ERROR,
    },
    S.REPORTING: {
        E.REPORT_COMPLETE: S.IDLE,
    },
    S.ERROR: {
        E.REPORT_COMPLETE: S.IDLE,
    },
}

del S, E
