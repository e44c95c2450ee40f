############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: API routers
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API endpoints for Tandem."""

from fastapi import APIRouter

from tandem.app.api.chat import router as chat_router
from tandem.app.api.health import router as health_router
from tandem.app.api.telemetry_api import router as telemetry_router
from tandem.app.api.vision import router as vision_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(chat_router, tags=["chat"])
api_router.include_router(vision_router, prefix="/api/vision", tags=["vision"])
api_router.include_router(telemetry_router, prefix="/api/telemetry", tags=["telemetry"])

__all__ = ["api_router"]
