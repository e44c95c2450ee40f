############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# sidecar_client.py: Client for the GPU metrics agent
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Client for the GPU metrics agent sharing the host with both sidecars."""

from typing import Optional

import httpx

from tandem.app.core.telemetry.models import (
    CapacitySnapshot,
    GPUDeviceSnapshot,
    SidecarResponse,
)
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)


class SidecarClient:
    """
    HTTP client for the GPU metrics agent.

    The agent exposes accelerator metrics via GET /gpu-info. The arbiter
    only cares about the first device; the text and diffusion sidecars
    both live on it.
    """

    def __init__(self, sidecar_url: str, timeout: float = 5.0, sidecar_key: Optional[str] = None):
        self.base_url = sidecar_url.rstrip("/")
        self.timeout = timeout
        self.sidecar_key = sidecar_key
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.sidecar_key:
                headers["X-Sidecar-Key"] = self.sidecar_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def get_gpu_info(self) -> Optional[SidecarResponse]:
        """
        Fetch GPU info from the agent.

        Returns:
            SidecarResponse with per-GPU details, or None if unavailable
        """
        try:
            client = await self._get_client()
            response = await client.get("/gpu-info")

            if response.status_code != 200:
                logger.debug(
                    "gpu_agent_bad_status",
                    url=self.base_url,
                    status=response.status_code,
                )
                return None

            return self._parse_response(response.json())

        except httpx.TimeoutException:
            logger.debug("gpu_agent_timeout", url=self.base_url)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("gpu_agent_error", url=self.base_url, error=str(e))
            return None

    async def get_capacity(self) -> Optional[CapacitySnapshot]:
        """Capacity of the shared accelerator, or None if the agent is unavailable."""
        info = await self.get_gpu_info()
        if info is None or not info.gpus:
            return None
        return CapacitySnapshot.from_device(info.gpus[0])

    async def health_check(self) -> bool:
        """Check if the agent is reachable."""
        try:
            client = await self._get_client()
            response = await client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _parse_response(self, data: dict) -> SidecarResponse:
        """Parse raw agent response into SidecarResponse dataclass."""
        gpus = []
        for gpu_data in data.get("gpus", []):
            gpus.append(
                GPUDeviceSnapshot(
                    index=gpu_data.get("index", 0),
                    name=gpu_data.get("name"),
                    uuid=gpu_data.get("uuid"),
                    memory_total_mb=gpu_data.get("memory_total_mb"),
                    memory_used_mb=gpu_data.get("memory_used_mb"),
                    memory_free_mb=gpu_data.get("memory_free_mb"),
                    utilization_gpu=gpu_data.get("utilization_gpu"),
                    utilization_memory=gpu_data.get("utilization_memory"),
                    temperature_gpu=gpu_data.get("temperature_gpu"),
                    power_draw_watts=gpu_data.get("power_draw_watts"),
                    power_limit_watts=gpu_data.get("power_limit_watts"),
                    fan_speed_percent=gpu_data.get("fan_speed_percent"),
                )
            )

        return SidecarResponse(
            hostname=data.get("hostname"),
            driver_version=data.get("driver_version"),
            cuda_version=data.get("cuda_version"),
            gpu_count=data.get("gpu_count", 0),
            gpus=gpus,
        )
