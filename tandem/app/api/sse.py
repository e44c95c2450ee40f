############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# sse.py: Server-sent event streaming for long-running requests
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Run a request in its own task and stream its events as SSE."""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from tandem.app.core.cancellation import CancellationToken
from tandem.app.core.events import EventChannel
from tandem.app.core.telemetry.metrics import REQUEST_COUNT, REQUEST_LATENCY
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

Work = Callable[[EventChannel, CancellationToken], Awaitable[Any]]


def make_request_id(supplied: Optional[str], prefix: str) -> str:
    return supplied or f"{prefix}-{uuid.uuid4().hex[:24]}"


def new_request_id(request: Request, prefix: str) -> str:
    """Caller-supplied X-Request-ID, else a fresh prefixed id."""
    return make_request_id(request.headers.get("x-request-id"), prefix)


def stream_request(request: Request, request_id: str, endpoint: str, work: Work) -> StreamingResponse:
    """
    Start ``work`` as a task and return a streaming response over its channel.

    A disconnect watcher cancels the task when the client goes away; the
    service still drives its controller to a terminal state and releases
    any accelerator lock on the way out.
    """
    channel = EventChannel(request_id)
    token = CancellationToken(request_id)
    task = asyncio.create_task(work(channel, token))
    watcher = asyncio.create_task(token.watch_disconnect(request, task))
    started = time.monotonic()

    async def body():
        try:
            async for chunk in channel.sse():
                yield chunk
        finally:
            if not task.done():
                token.cancel("stream_closed")
                task.cancel()
            watcher.cancel()
            outcome = "cancelled" if token.cancelled else "ok"
            REQUEST_COUNT.labels(endpoint=endpoint, status=outcome).inc()
            REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.monotonic() - started)
            logger.info(
                "stream_closed",
                request_id=request_id,
                endpoint=endpoint,
                events=channel.emitted,
                outcome=outcome,
            )

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            "X-Request-ID": request_id,
        },
    )
