############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# health.py: Health check and metrics endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tandem.app.core.telemetry.metrics import ACCELERATOR_TEMPERATURE, ACCELERATOR_VRAM_FREE
from tandem.app.logging_config import get_logger
from tandem.app.services.registry import get_services
from tandem.app.settings import get_settings

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe() -> Dict[str, Any]:
    """
    Readiness probe - checks if the application is ready to serve traffic.

    Checks:
    - Text sidecar reachable
    - Diffusion sidecar reachable
    - GPU agent reachable
    """
    checks = {
        "text_sidecar": False,
        "diffusion_sidecar": False,
        "gpu_agent": False,
    }

    try:
        services = get_services()
    except RuntimeError:
        services = None

    if services is not None:
        checks["text_sidecar"] = await services.ollama.health_check()
        checks["diffusion_sidecar"] = await services.diffusion.health_check()
        checks["gpu_agent"] = await services.gpu_agent.health_check()

    all_ready = all(checks.values())

    return {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not get_settings().metrics_enabled:
        return Response(status_code=404)

    try:
        # Refresh accelerator gauges from the cached snapshot
        snapshot = await get_services().arbiter.capacity_snapshot()
        ACCELERATOR_TEMPERATURE.set(snapshot.temperature_c)
        ACCELERATOR_VRAM_FREE.set(snapshot.vram_free_mb)
    except RuntimeError:
        pass

    metrics = generate_latest()
    return Response(content=metrics, media_type=CONTENT_TYPE_LATEST)
