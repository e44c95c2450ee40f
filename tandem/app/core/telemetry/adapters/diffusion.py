############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# diffusion.py: Image-diffusion sidecar client (FLUX)
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Image-diffusion sidecar client."""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from tandem.app.core.telemetry.adapters.errors import SidecarError
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

SIDECAR_NAME = "diffusion"


@dataclass(frozen=True)
class FluxMode:
    """Sampler settings for one diffusion mode."""

    name: str
    steps: int
    guidance_scale: float
    vram_estimate_mb: int


FLUX_MODES: Dict[str, FluxMode] = {
    "schnell": FluxMode("schnell", steps=4, guidance_scale=0.0, vram_estimate_mb=8000),
    "dev": FluxMode("dev", steps=28, guidance_scale=3.5, vram_estimate_mb=12000),
}


def resolve_flux_mode(requested: Optional[str], allow_dev: bool) -> FluxMode:
    """Pick the diffusion mode. ``dev`` is only honored when the tier allows it."""
    if requested == "dev" and allow_dev:
        return FLUX_MODES["dev"]
    return FLUX_MODES["schnell"]


@dataclass
class RenderResult:
    """One rendered image."""

    image_bytes: bytes
    seed: Optional[int]
    elapsed: float
    width: int = 0
    height: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class DiffusionClient:
    """
    HTTP client for the diffusion sidecar.

    Endpoints used:
    - POST /generate - Render an image (base64 response)
    - POST /composite-text - Draw text boxes over a rendered image
    - POST /unload - Release the pipeline's VRAM
    - GET /health - Liveness
    """

    def __init__(self, base_url: str, timeout: float = 300.0, composite_timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.composite_timeout = composite_timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(path, json=payload, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise SidecarError(f"diffusion sidecar timeout on {path}", SIDECAR_NAME) from e
        except httpx.HTTPStatusError as e:
            raise SidecarError(
                f"diffusion sidecar returned HTTP {e.response.status_code} on {path}",
                SIDECAR_NAME,
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SidecarError(f"diffusion sidecar error on {path}: {e}", SIDECAR_NAME) from e

    async def render(
        self,
        prompt: str,
        negative_prompt: str = "",
        width: int = 1024,
        height: int = 1024,
        steps: int = 4,
        guidance_scale: float = 0.0,
        seed: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> RenderResult:
        """
        Render one image.

        Raises:
            SidecarError: on transport failure or when the sidecar reports
                ``success: false``
        """
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "negative_prompt": negative_prompt,
            "width": width,
            "height": height,
            "steps": steps,
            "guidance_scale": guidance_scale,
            "request_id": request_id,
        }
        if seed is not None:
            payload["seed"] = seed

        data = await self._post("/generate", payload, self.timeout)
        if not data.get("success"):
            raise SidecarError(
                f"diffusion render failed: {data.get('error') or 'unknown error'}",
                SIDECAR_NAME,
            )

        dims = data.get("dimensions") or {}
        return RenderResult(
            image_bytes=base64.b64decode(data.get("base64") or ""),
            seed=data.get("seed"),
            elapsed=float(data.get("elapsed") or 0.0),
            width=int(dims.get("width") or width),
            height=int(dims.get("height") or height),
        )

    async def composite_text(
        self,
        image_bytes: bytes,
        text_boxes: Sequence[Dict[str, Any]],
        request_id: Optional[str] = None,
    ) -> bytes:
        """Overlay pixel-space text boxes. Raises SidecarError on failure."""
        data = await self._post(
            "/composite-text",
            {
                "image_base64": base64.b64encode(image_bytes).decode("ascii"),
                "text_boxes": list(text_boxes),
                "request_id": request_id,
            },
            self.composite_timeout,
        )
        if not data.get("success"):
            raise SidecarError(
                f"text compositing failed: {data.get('error') or 'unknown error'}",
                SIDECAR_NAME,
            )
        return base64.b64decode(data.get("base64") or "")

    async def unload(self) -> List[str]:
        """Ask the sidecar to free its VRAM. Best effort; returns what was unloaded."""
        try:
            data = await self._post("/unload", {}, self.composite_timeout)
        except SidecarError as e:
            logger.warning("diffusion_unload_failed", error=str(e))
            return []
        logger.info("diffusion_pipeline_unloaded")
        return [data.get("model") or "diffusion"]

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/health", timeout=self.composite_timeout)
            return response.status_code == 200
        except httpx.HTTPError:
            return False
