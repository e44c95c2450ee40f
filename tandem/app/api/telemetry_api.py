############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# telemetry_api.py: Accelerator telemetry endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Telemetry API endpoints for the shared accelerator."""

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter

from tandem.app.logging_config import get_logger
from tandem.app.services.registry import get_services

logger = get_logger(__name__)
router = APIRouter()


@router.get("")
async def telemetry_overview() -> Dict[str, Any]:
    """
    Everything the arbiter knows about the accelerator.

    Combines the GPU agent's raw device report, the cached capacity
    snapshot, the thermal advisory, the lock holder and the models
    resident on the text sidecar.
    """
    services = get_services()
    arbiter = services.arbiter

    gpu_info = await services.gpu_agent.get_gpu_info()
    snapshot = await arbiter.capacity_snapshot()
    advisory = await arbiter.thermal_advisory()
    loaded = await services.ollama.list_loaded_models()

    return {
        "profile": arbiter.profile.name,
        "agent": {
            "reachable": gpu_info is not None,
            "hostname": gpu_info.hostname if gpu_info else None,
            "driver_version": gpu_info.driver_version if gpu_info else None,
            "cuda_version": gpu_info.cuda_version if gpu_info else None,
        },
        "capacity": snapshot.to_dict(),
        "thermal": advisory.to_dict(),
        "lock": arbiter.lock_status().to_dict(),
        "loaded_models": [asdict(m) for m in loaded],
    }


@router.get("/capacity")
async def capacity() -> Dict[str, Any]:
    snapshot = await get_services().arbiter.capacity_snapshot()
    return snapshot.to_dict()


@router.get("/thermal")
async def thermal() -> Dict[str, Any]:
    advisory = await get_services().arbiter.thermal_advisory()
    return advisory.to_dict()


@router.get("/canfit/{model_id}")
async def can_fit(model_id: str) -> Dict[str, Any]:
    """Whether ``model_id`` fits in free VRAM after the safety margin."""
    fit = await get_services().arbiter.can_fit(model_id)
    return {"model": model_id, **fit.to_dict()}


@router.get("/recommend/{model_id}")
async def recommend(model_id: str) -> Dict[str, Any]:
    recommendation = await get_services().arbiter.recommend_model(model_id)
    return recommendation.to_dict()


@router.get("/loadable")
async def loadable() -> Dict[str, Any]:
    return await get_services().arbiter.loadable_models()


@router.get("/lock")
async def lock() -> Dict[str, Any]:
    return get_services().arbiter.lock_status().to_dict()
