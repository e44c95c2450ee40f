############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_events.py: Unit tests for progress events and request cancellation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for EventChannel, SSE framing and CancellationToken."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tandem.app.core.cancellation import CancellationToken, RequestCancelled
from tandem.app.core.events import (
    EventChannel,
    busy_event,
    format_sse,
    phase_event,
    token_event,
)


class TestEventHelpers:
    def test_phase_event_omits_empty_data(self):
        assert phase_event("render", "active") == {"type": "phase", "name": "render", "status": "active"}
        assert phase_event("render", "complete", {"attempt": 1})["data"] == {"attempt": 1}

    def test_busy_event_optional_fields(self):
        assert busy_event("locked") == {"type": "busy", "reason": "locked"}
        event = busy_event("locked", holder="chat-1", elapsed_ms=1500)
        assert event["holder"] == "chat-1"
        assert event["elapsed_ms"] == 1500

    def test_format_sse(self):
        framed = format_sse(token_event("hi"))

        assert framed.startswith("data: ")
        assert framed.endswith("\n\n")
        assert json.loads(framed[len("data: "):]) == {"type": "token", "content": "hi"}


class TestEventChannel:
    """Every stream ends with exactly one ``done``."""

    @pytest.mark.asyncio
    async def test_events_in_order_then_done(self, drain):
        channel = EventChannel("req-1")
        channel.emit(token_event("a"))
        channel.emit(token_event("b"))
        channel.finish(model="kuro-core")

        events = await drain(channel)

        assert [e["type"] for e in events] == ["token", "token", "done"]
        assert events[-1]["model"] == "kuro-core"

    @pytest.mark.asyncio
    async def test_finish_is_idempotent(self, drain):
        channel = EventChannel("req-1")
        channel.finish(state="REPORTING")
        channel.finish(state="ERROR")
        channel.emit(token_event("late"))

        events = await drain(channel)

        assert events == [{"type": "done", "state": "REPORTING"}]
        assert channel.finished

    @pytest.mark.asyncio
    async def test_emitted_done_closes(self, drain):
        channel = EventChannel("req-1")
        channel.emit({"type": "done", "busy": True})

        events = await drain(channel)

        assert events == [{"type": "done", "busy": True}]

    @pytest.mark.asyncio
    async def test_consumer_waits_for_producer(self):
        channel = EventChannel("req-1")

        async def produce():
            await asyncio.sleep(0.01)
            channel.emit(token_event("x"))
            channel.finish()

        task = asyncio.create_task(produce())
        frames = [frame async for frame in channel.sse()]
        await task

        assert len(frames) == 2
        assert '"done"' in frames[-1]


class TestCancellationToken:
    def test_cancel_keeps_first_reason(self):
        token = CancellationToken("req-1")

        token.cancel("client_disconnected")
        token.cancel("timeout")

        assert token.cancelled
        assert token.reason == "client_disconnected"

    def test_raise_if_cancelled(self):
        token = CancellationToken("req-1")
        token.raise_if_cancelled()

        token.cancel("stop")

        with pytest.raises(RequestCancelled, match="stop"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_watch_disconnect_cancels_task(self):
        token = CancellationToken("req-1")
        request = MagicMock()
        request.is_disconnected = AsyncMock(side_effect=[False, True])
        task = asyncio.create_task(asyncio.sleep(10))

        await token.watch_disconnect(request, task, check_interval=0.01)

        assert token.cancelled
        assert token.reason == "client_disconnected"
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_watch_returns_when_task_done(self):
        token = CancellationToken("req-1")
        request = MagicMock()
        request.is_disconnected = AsyncMock(return_value=False)
        task = asyncio.create_task(asyncio.sleep(0))
        await task

        await token.watch_disconnect(request, task, check_interval=0.01)

        assert not token.cancelled
        request.is_disconnected.assert_not_awaited()
