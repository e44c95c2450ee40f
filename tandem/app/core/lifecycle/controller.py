############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# controller.py: Per-request lifecycle state machine
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""
Per-request lifecycle controller.

One controller drives one request through the transition table in
``states``. Every transition is published as a ``state`` event on the
request's channel and handed to any registered listeners. Reaching
REPORTING, ERROR or BLOCKED releases the accelerator lock if this
request holds it.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from tandem.app.core.arbiter import AcceleratorArbiter, AcquireResult, WorkloadClass
from tandem.app.core.events import EventChannel, state_event
from tandem.app.core.lifecycle.states import (
    TERMINAL_STATES,
    TRANSITIONS,
    ControllerEvent,
    RequestContext,
    RequestState,
    WorkloadMode,
)
from tandem.app.core.telemetry import metrics
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 1


@dataclass(frozen=True)
class StateChange:
    prev_state: RequestState
    state: RequestState
    event: ControllerEvent
    payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[StateChange], None]


class RequestController:
    """State machine for a single request."""

    def __init__(
        self,
        channel: Optional[EventChannel] = None,
        arbiter: Optional[AcceleratorArbiter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self._arbiter = arbiter
        self._clock = clock
        self._listeners: List[Listener] = []
        self.state = RequestState.IDLE
        self.context = RequestContext(request_id="", start_time=clock())
        self.history: List[StateChange] = []

    def initialize(
        self,
        request_id: str,
        workload_mode: Union[WorkloadMode, str] = WorkloadMode.MAIN,
        options: Optional[Dict[str, Any]] = None,
    ) -> RequestContext:
        """Reset to IDLE with a fresh context for ``request_id``."""
        options = dict(options or {})
        self.state = RequestState.IDLE
        self.history = []
        self.context = RequestContext(
            request_id=request_id,
            workload_mode=WorkloadMode(workload_mode),
            max_retries=int(options.get("max_retries", DEFAULT_MAX_RETRIES)),
            start_time=self._clock(),
            options=options,
        )
        return self.context

    @property
    def request_id(self) -> str:
        return self.context.request_id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def aborted(self) -> bool:
        return self.context.aborted

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.context.start_time) * 1000)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def bind_arbiter(self, arbiter: AcceleratorArbiter) -> None:
        self._arbiter = arbiter

    async def acquire_accelerator(
        self, workload: WorkloadClass, heavy: bool = True
    ) -> AcquireResult:
        """Acquire the accelerator on behalf of this request."""
        if self._arbiter is None:
            raise RuntimeError("No arbiter bound to controller")
        return await self._arbiter.acquire(self.request_id, workload, heavy=heavy)

    def _merge_payload(self, payload: Dict[str, Any]) -> None:
        for key, value in payload.items():
            if key in ("last_error", "error"):
                self.context.last_error = None if value is None else str(value)
            else:
                self.context.data[key] = value

    def dispatch(
        self,
        event: Union[ControllerEvent, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> RequestState:
        """Apply one event. Unknown or invalid transitions leave the state unchanged."""
        try:
            event = ControllerEvent(event)
        except ValueError:
            logger.warning("unknown_lifecycle_event", request_id=self.request_id, lifecycle_event=str(event))
            return self.state
        payload = dict(payload or {})

        if event is ControllerEvent.ABORT:
            return self.abort(str(payload.get("reason", "Request aborted")))

        if self.context.aborted:
            logger.debug(
                "event_after_abort_ignored",
                request_id=self.request_id,
                lifecycle_event=event.value,
            )
            return self.state

        target = TRANSITIONS.get(self.state, {}).get(event)
        if target is None:
            logger.warning(
                "invalid_transition",
                request_id=self.request_id,
                state=self.state.value,
                lifecycle_event=event.value,
            )
            return self.state

        next_state = target(self.context) if callable(target) else target

        self._merge_payload(payload)
        if event is ControllerEvent.JUDGE_FAIL:
            if next_state is RequestState.REPLANNING:
                self.context.retry_count += 1
            else:
                reason = payload.get("reason") or self.context.last_error or "verification failed"
                self.context.last_error = str(reason)
                logger.info(
                    "retries_exhausted",
                    request_id=self.request_id,
                    retry_count=self.context.retry_count,
                    max_retries=self.context.max_retries,
                )

        self._transition(next_state, event, payload)
        return self.state

    def abort(self, reason: str = "Request aborted") -> RequestState:
        """Force REPORTING with ``aborted`` set. No-op once terminal."""
        if self.context.aborted or self.is_terminal:
            return self.state
        self.context.aborted = True
        self.context.last_error = reason
        logger.info("request_aborted", request_id=self.request_id, state=self.state.value, reason=reason)
        self._transition(RequestState.REPORTING, ControllerEvent.ABORT, {"reason": reason})
        return self.state

    def _transition(
        self, next_state: RequestState, event: ControllerEvent, payload: Dict[str, Any]
    ) -> None:
        prev = self.state
        self.state = next_state
        change = StateChange(prev_state=prev, state=next_state, event=event, payload=payload)
        self.history.append(change)

        logger.debug(
            "state_transition",
            request_id=self.request_id,
            prev_state=prev.value,
            state=next_state.value,
            lifecycle_event=event.value,
        )

        if self.channel is not None:
            self.channel.emit(state_event(next_state.value, prev.value, event.value))

        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error("state_listener_failed", request_id=self.request_id, error=str(e))

        if next_state in TERMINAL_STATES:
            self._on_terminal(next_state)

    def _on_terminal(self, state: RequestState) -> None:
        metrics.CONTROLLER_TERMINALS.labels(state=state.value).inc()
        if self._arbiter is not None and self._arbiter.holds_lock(self.request_id):
            self._arbiter.release(self.request_id)
