############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# ollama.py: Text-generation sidecar adapter (Ollama API)
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Text-generation sidecar adapter speaking the Ollama HTTP API."""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from tandem.app.core.telemetry.adapters.errors import SidecarError
from tandem.app.core.telemetry.models import LoadedModel
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

SIDECAR_NAME = "text"


def _message_content(body: Any) -> Optional[str]:
    """Content of an /api/chat body. Raises SidecarError on an unexpected shape."""
    if not isinstance(body, dict):
        raise SidecarError("text sidecar error: unexpected response shape", SIDECAR_NAME)
    message = body.get("message")
    if message is None:
        return None
    if not isinstance(message, dict):
        raise SidecarError("text sidecar error: unexpected response shape", SIDECAR_NAME)
    content = message.get("content")
    return content if isinstance(content, str) else None


class OllamaAdapter:
    """
    Adapter for the text-generation sidecar.

    Ollama API endpoints used:
    - POST /api/chat - Completions (buffered and streamed)
    - GET /api/ps - List loaded models
    - POST /api/generate - Load/unload a model via keep_alive
    - GET /api/tags - Health check
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        control_timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.control_timeout = control_timeout
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

    @staticmethod
    def _build_payload(
        model: str,
        messages: Sequence[Dict[str, Any]],
        temperature: Optional[float],
        seed: Optional[int],
        context_window: Optional[int],
        max_tokens: Optional[int],
        format: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if seed is not None:
            options["seed"] = seed
        if context_window is not None:
            options["num_ctx"] = context_window
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        payload: Dict[str, Any] = {
            "model": model,
            "messages": list(messages),
            "stream": stream,
            "options": options,
        }
        if format:
            payload["format"] = format
        return payload

    async def complete(
        self,
        model: str,
        messages: Sequence[Dict[str, Any]],
        temperature: Optional[float] = None,
        seed: Optional[int] = None,
        context_window: Optional[int] = None,
        format: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run one non-streaming chat completion.

        Returns:
            The assistant message content (empty string if absent)

        Raises:
            SidecarError: on transport failure, timeout or non-2xx status
        """
        payload = self._build_payload(
            model, messages, temperature, seed, context_window, max_tokens, format, False
        )
        client = await self._get_client()
        try:
            response = await client.post(
                "/api/chat", json=payload, timeout=timeout or self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise SidecarError(f"text sidecar timeout: {e}", SIDECAR_NAME) from e
        except httpx.HTTPStatusError as e:
            raise SidecarError(
                f"text sidecar returned HTTP {e.response.status_code}",
                SIDECAR_NAME,
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SidecarError(f"text sidecar error: {e}", SIDECAR_NAME) from e

        return _message_content(data) or ""

    async def stream_complete(
        self,
        model: str,
        messages: Sequence[Dict[str, Any]],
        temperature: Optional[float] = None,
        seed: Optional[int] = None,
        context_window: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion, yielding content deltas as they arrive."""
        payload = self._build_payload(
            model, messages, temperature, seed, context_window, max_tokens, None, True
        )
        client = await self._get_client()
        try:
            async with client.stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("text_sidecar_bad_chunk", line=line[:200])
                        continue
                    if isinstance(chunk, dict) and chunk.get("error"):
                        raise SidecarError(str(chunk["error"]), SIDECAR_NAME)
                    content = _message_content(chunk)
                    if content:
                        yield content
                    if chunk.get("done"):
                        break
        except httpx.TimeoutException as e:
            raise SidecarError(f"text sidecar timeout: {e}", SIDECAR_NAME) from e
        except httpx.HTTPStatusError as e:
            raise SidecarError(
                f"text sidecar returned HTTP {e.response.status_code}",
                SIDECAR_NAME,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise SidecarError(f"text sidecar error: {e}", SIDECAR_NAME) from e

    async def list_loaded_models(self) -> List[LoadedModel]:
        """List models resident on the accelerator. Empty list if the sidecar is unreachable."""
        try:
            client = await self._get_client()
            response = await client.get("/api/ps", timeout=self.control_timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("text_sidecar_list_failed", error=str(e))
            return []

        if not isinstance(data, dict):
            logger.warning("text_sidecar_list_unexpected_shape")
            return []

        loaded = []
        for entry in data.get("models") or []:
            if not isinstance(entry, dict):
                continue
            loaded.append(
                LoadedModel(
                    name=entry.get("name", ""),
                    size_mb=int(entry.get("size") or 0) // (1024 * 1024),
                    vram_mb=int(entry.get("size_vram") or 0) // (1024 * 1024),
                    expires_at=entry.get("expires_at"),
                )
            )
        return loaded

    async def _set_keep_alive(self, name: str, keep_alive: str, timeout: float) -> bool:
        client = await self._get_client()
        response = await client.post(
            "/api/generate",
            json={"model": name, "keep_alive": keep_alive, "prompt": ""},
            timeout=timeout,
        )
        response.raise_for_status()
        return True

    async def unload_model(self, name: str) -> bool:
        """Ask the sidecar to drop a model from VRAM immediately."""
        try:
            await self._set_keep_alive(name, "0", self.control_timeout)
            logger.info("text_model_evicted", model=name)
            return True
        except httpx.HTTPError as e:
            logger.warning("text_model_evict_failed", model=name, error=str(e))
            return False

    async def preload_model(self, name: str, keep_alive: str = "5m") -> bool:
        """Warm a model into VRAM ahead of the next chat request."""
        try:
            await self._set_keep_alive(name, keep_alive, max(self.control_timeout, 60.0))
            logger.info("text_model_preloaded", model=name)
            return True
        except httpx.HTTPError as e:
            logger.warning("text_model_preload_failed", model=name, error=str(e))
            return False

    async def evict_models(self, exempt_substrings: Sequence[str] = ()) -> List[str]:
        """Unload every resident model except names containing an exempt substring."""
        evicted = []
        for model in await self.list_loaded_models():
            if any(s in model.name for s in exempt_substrings):
                continue
            if await self.unload_model(model.name):
                evicted.append(model.name)
        return evicted

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/api/tags", timeout=self.control_timeout)
            return response.status_code == 200
        except httpx.HTTPError:
            return False
