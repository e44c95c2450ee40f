############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# cancellation.py: Request-scoped cancellation and disconnect detection
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request-scoped cancellation tokens and client-disconnect detection."""

import asyncio
from typing import Optional

from fastapi import Request

from tandem.app.logging_config import get_logger

logger = get_logger(__name__)


class RequestCancelled(Exception):
    """Raised when the client has gone away or the request was cancelled."""


class CancellationToken:
    """
    Token for cooperative cancellation of one request.

    The token can be cancelled directly (``cancel``) or by a disconnect
    watcher. Work in progress checks ``raise_if_cancelled`` between
    suspension points; the watcher additionally cancels the request task
    so in-flight sidecar calls are interrupted.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Mark the request as cancelled. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info("request_cancelled", request_id=self.request_id, reason=reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def watch_disconnect(
        self,
        request: Request,
        task: "asyncio.Task",
        check_interval: float = 0.5,
    ) -> None:
        """Poll the client connection and cancel ``task`` once it drops."""
        while not task.done():
            try:
                disconnected = await request.is_disconnected()
            except (RuntimeError, OSError):
                disconnected = False
            if disconnected:
                self.cancel("client_disconnected")
                task.cancel()
                return
            try:
                await asyncio.wait_for(self._event.wait(), timeout=check_interval)
            except asyncio.TimeoutError:
                continue
            if self.cancelled and not task.done():
                task.cancel()
                return


__all__ = [
    "CancellationToken",
    "RequestCancelled",
]
