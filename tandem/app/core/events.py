############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# events.py: Outbound progress events and the per-request event channel
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""
Outbound progress events.

Producers (controller, synthesis engine, pipeline, services) push plain
dict events onto an ``EventChannel``; the SSE layer consumes the channel
as an async iterator and frames each event as ``data: {json}\\n\\n``.
Every stream ends with exactly one ``done`` event.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

Event = Dict[str, Any]

_SENTINEL: Any = object()


def phase_event(name: str, status: str, data: Optional[Dict[str, Any]] = None) -> Event:
    event: Event = {"type": "phase", "name": name, "status": status}
    if data:
        event["data"] = data
    return event


def state_event(state: str, prev_state: str, event: str) -> Event:
    return {"type": "state", "state": state, "prev_state": prev_state, "event": event}


def token_event(content: str) -> Event:
    return {"type": "token", "content": content}


def check_event(check: str, status: str, reason: str) -> Event:
    return {"type": "check", "check": check, "status": status, "reason": reason}


def busy_event(
    reason: str,
    holder: Optional[str] = None,
    elapsed_ms: Optional[int] = None,
) -> Event:
    event: Event = {"type": "busy", "reason": reason}
    if holder is not None:
        event["holder"] = holder
    if elapsed_ms is not None:
        event["elapsed_ms"] = elapsed_ms
    return event


def result_event(**fields: Any) -> Event:
    return {"type": "result", **fields}


def error_event(message: str) -> Event:
    return {"type": "error", "message": message}


def done_event(**fields: Any) -> Event:
    return {"type": "done", **fields}


def format_sse(event: Event) -> str:
    """Frame one event for a text/event-stream response."""
    return f"data: {json.dumps(event, default=str)}\n\n"


class EventChannel:
    """
    Unbounded asyncio queue of events, closed by a single ``done``.

    ``emit`` never blocks so synchronous code (state transitions) can
    publish. Events emitted after ``finish`` are dropped.
    """

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._finished = False
        self._emitted = 0

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def emitted(self) -> int:
        return self._emitted

    def emit(self, event: Event) -> None:
        if self._finished:
            logger.debug(
                "event_after_done_dropped",
                request_id=self.request_id,
                event_type=event.get("type"),
            )
            return
        if event.get("type") == "done":
            self.finish(**{k: v for k, v in event.items() if k != "type"})
            return
        self._queue.put_nowait(event)
        self._emitted += 1

    def finish(self, **fields: Any) -> None:
        """Emit the terminal ``done`` event and close the channel. Idempotent."""
        if self._finished:
            return
        self._queue.put_nowait(done_event(**fields))
        self._emitted += 1
        self._finished = True
        self._queue.put_nowait(_SENTINEL)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                return
            yield item

    async def sse(self) -> AsyncIterator[str]:
        """Consume the channel as framed SSE text."""
        async for event in self:
            yield format_sse(event)
