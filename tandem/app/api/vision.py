############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# vision.py: Image generation, status, cleanup and artifact endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Vision endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse

from tandem.app.api.sse import new_request_id, stream_request
from tandem.app.core.schemas import CleanupRequest, VisionRequest
from tandem.app.logging_config import bind_request_context, get_logger
from tandem.app.services.registry import get_services

logger = get_logger(__name__)
router = APIRouter()


@router.post("/generate")
async def generate(body: VisionRequest, request: Request) -> StreamingResponse:
    """Stream an image generation as server-sent events."""
    request_id = new_request_id(request, "vis")
    bind_request_context(request_id=request_id)
    service = get_services().vision
    logger.info(
        "vision_request",
        request_id=request_id,
        tier=body.hints.tier,
        flux_mode=body.flux_mode,
        session_id=body.session_id,
    )
    return stream_request(
        request,
        request_id,
        "/api/vision/generate",
        lambda channel, token: service.run(body, request_id, channel, token),
    )


@router.get("/status")
async def vision_status() -> Dict[str, Any]:
    return await get_services().vision.status()


@router.post("/cleanup")
async def cleanup(body: Optional[CleanupRequest] = None) -> Dict[str, Any]:
    """Run the artifact retention sweep now."""
    profile = body.profile if body else None
    try:
        result = await get_services().vision.cleanup(profile)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"removed": result.removed, "remaining": result.remaining, "profile": result.profile}


@router.get("/artifacts/{storage_path:path}")
async def get_artifact(storage_path: str) -> Response:
    """Serve a stored image by its storage path."""
    storage = get_services().artifacts
    try:
        storage.resolve(storage_path)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid artifact path")

    data = await storage.retrieve(storage_path)
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Artifact not found")
    return Response(
        content=data,
        media_type="image/png",
        headers={"Cache-Control": "private, max-age=86400"},
    )
