############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_sidecar_client.py: Unit tests for the GPU metrics agent client
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for SidecarClient."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from tandem.app.core.telemetry.adapters import SidecarClient
from tandem.app.core.telemetry.models import (
    CapacitySnapshot,
    GPUDeviceSnapshot,
    SidecarResponse,
)

SAMPLE_GPU_RESPONSE = {
    "hostname": "kuro-node",
    "timestamp": "2026-03-02T18:00:00Z",
    "driver_version": "570.124.04",
    "cuda_version": "12.8",
    "gpu_count": 1,
    "primary_index": 0,
    "gpus": [
        {
            "index": 0,
            "name": "NVIDIA GeForce RTX 5090",
            "uuid": "GPU-5090-aaaa",
            "memory_total_mb": 32607,
            "memory_used_mb": 20607,
            "memory_free_mb": 12000,
            "utilization_gpu": 88.0,
            "utilization_memory": 61.0,
            "temperature_gpu": 71,
            "power_draw_watts": 455.0,
            "power_limit_watts": 575.0,
            "fan_speed_percent": 64,
        }
    ],
}


def _client_with(response=None, side_effect=None):
    client = SidecarClient("http://localhost:8007")
    mock_http_client = AsyncMock()
    mock_http_client.get = AsyncMock(return_value=response, side_effect=side_effect)
    mock_http_client.is_closed = False
    client._client = mock_http_client
    return client, mock_http_client


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


class TestSidecarClientInit:
    def test_strips_trailing_slash(self):
        client = SidecarClient("http://localhost:8007/")
        assert client.base_url == "http://localhost:8007"

    def test_default_timeout(self):
        assert SidecarClient("http://localhost:8007").timeout == 5.0

    @pytest.mark.asyncio
    async def test_key_header(self):
        client = SidecarClient("http://localhost:8007", sidecar_key="s3cret")
        http_client = await client._get_client()
        try:
            assert http_client.headers["X-Sidecar-Key"] == "s3cret"
        finally:
            await client.close()


class TestParseResponse:
    def test_parses_full_response(self):
        result = SidecarClient("http://localhost:8007")._parse_response(SAMPLE_GPU_RESPONSE)

        assert isinstance(result, SidecarResponse)
        assert result.hostname == "kuro-node"
        assert result.cuda_version == "12.8"
        gpu = result.gpus[0]
        assert isinstance(gpu, GPUDeviceSnapshot)
        assert gpu.memory_free_mb == 12000
        assert gpu.temperature_gpu == 71

    def test_handles_missing_fields(self):
        result = SidecarClient("http://localhost:8007")._parse_response(
            {"gpus": [{"index": 0, "name": "Test GPU"}]}
        )

        assert result.gpu_count == 0
        assert result.driver_version is None
        assert result.gpus[0].memory_total_mb is None


class TestGetCapacity:
    @pytest.mark.asyncio
    async def test_capacity_from_first_device(self):
        client, http = _client_with(_response(200, SAMPLE_GPU_RESPONSE))

        snapshot = await client.get_capacity()

        assert isinstance(snapshot, CapacitySnapshot)
        assert snapshot.vram_free_mb == 12000
        assert snapshot.vram_percent == 63
        assert snapshot.temperature_c == 71.0
        assert snapshot.error is None
        http.get.assert_called_once_with("/gpu-info")

    @pytest.mark.asyncio
    async def test_free_derived_when_missing(self):
        payload = {
            "gpus": [{"index": 0, "memory_total_mb": 24576, "memory_used_mb": 4576}],
        }
        client, _ = _client_with(_response(200, payload))

        snapshot = await client.get_capacity()

        assert snapshot.vram_free_mb == 20000
        assert snapshot.name == "unknown"

    @pytest.mark.asyncio
    async def test_no_gpus_returns_none(self):
        client, _ = _client_with(_response(200, {"gpus": []}))
        assert await client.get_capacity() is None

    @pytest.mark.asyncio
    async def test_bad_status_returns_none(self):
        client, _ = _client_with(_response(503))
        assert await client.get_gpu_info() is None

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        client, _ = _client_with(side_effect=httpx.TimeoutException("timeout"))
        assert await client.get_capacity() is None

    @pytest.mark.asyncio
    async def test_connection_error_returns_none(self):
        client, _ = _client_with(side_effect=httpx.ConnectError("Connection refused"))
        assert await client.get_gpu_info() is None


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        client, _ = _client_with(_response(200))
        assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        client, _ = _client_with(_response(401))
        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_unreachable(self):
        client, _ = _client_with(side_effect=httpx.ConnectError("Connection refused"))
        assert await client.health_check() is False
