############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# chat.py: Chat streaming endpoint
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Chat endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from tandem.app.api.sse import new_request_id, stream_request
from tandem.app.core.schemas import ChatRequest
from tandem.app.logging_config import bind_request_context, get_logger
from tandem.app.services.registry import get_services

logger = get_logger(__name__)
router = APIRouter()


@router.post("/api/chat")
async def chat(body: ChatRequest, request: Request) -> StreamingResponse:
    """
    Stream a chat response as server-sent events.

    The stream carries phase, state, token and busy events and always
    ends with a single ``done`` event.
    """
    request_id = new_request_id(request, "chat")
    bind_request_context(request_id=request_id)
    service = get_services().chat
    logger.info(
        "chat_request",
        request_id=request_id,
        mode=body.hints.mode.value,
        tier=body.hints.tier,
        synthesis=body.synthesis,
        messages=len(body.messages),
    )
    return stream_request(
        request,
        request_id,
        "/api/chat",
        lambda channel, token: service.run(body, request_id, channel, token),
    )
