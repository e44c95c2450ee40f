############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_gpu_agent.py: Unit tests for the accelerator metrics agent
#
############################################################

"""Unit tests for the GPU agent with mocked pynvml."""

import os
import sys
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient


# ---- Set required env var before importing the agent ----
TEST_SECRET_KEY = "test-secret-key-for-unit-tests"
os.environ["SIDECAR_SECRET_KEY"] = TEST_SECRET_KEY

# ---- Create mock pynvml before importing the agent ----
mock_pynvml = MagicMock()
mock_pynvml.NVML_TEMPERATURE_GPU = 0
sys.modules["pynvml"] = mock_pynvml

# Now import the agent
sys.path.insert(0, str(__import__("pathlib").Path(__file__).resolve().parents[1]))
from gpu_agent import app, _init_nvml, _get_gpu_info
import gpu_agent

# Auth header for all authenticated requests
AUTH_HEADER = {"X-Sidecar-Key": TEST_SECRET_KEY}

MIB = 1024**2


# ---- Fixtures ----
@pytest.fixture(autouse=True)
def reset_agent_state():
    """Reset agent global state and mock side_effects before each test."""
    gpu_agent._initialized = False
    gpu_agent._init_error = None
    gpu_agent._driver_version = None
    gpu_agent._cuda_version = None
    gpu_agent._device_count = 0
    gpu_agent.PRIMARY_DEVICE_INDEX = 0
    mock_pynvml.nvmlInit.side_effect = None
    mock_pynvml.nvmlInit.return_value = None
    mock_pynvml.nvmlDeviceGetHandleByIndex.side_effect = None
    mock_pynvml.nvmlDeviceGetTemperature.side_effect = None
    mock_pynvml.nvmlDeviceGetFanSpeed.side_effect = None
    mock_pynvml.nvmlDeviceGetMemoryInfo.side_effect = None
    yield


@pytest.fixture
def client():
    """Create a test client for the agent."""
    return TestClient(app, raise_server_exceptions=False)


def setup_mock_pynvml(device_count=1):
    """Configure mock pynvml with an RTX 5090-like device."""
    mock_pynvml.nvmlInit.return_value = None
    mock_pynvml.nvmlSystemGetDriverVersion.return_value = "570.86.10"
    mock_pynvml.nvmlSystemGetCudaDriverVersion_v2.return_value = 12080
    mock_pynvml.nvmlDeviceGetCount.return_value = device_count

    handles = [MagicMock() for _ in range(device_count)]
    mock_pynvml.nvmlDeviceGetHandleByIndex.side_effect = lambda i: handles[i]
    mock_pynvml.nvmlDeviceGetName.side_effect = lambda h: "NVIDIA GeForce RTX 5090"
    mock_pynvml.nvmlDeviceGetUUID.side_effect = lambda h: f"GPU-uuid-{id(h)}"

    mem = MagicMock()
    mem.total = 32607 * MIB
    mem.used = 20607 * MIB
    mem.free = 12000 * MIB
    mock_pynvml.nvmlDeviceGetMemoryInfo.return_value = mem

    util = MagicMock()
    util.gpu = 88
    util.memory = 61
    mock_pynvml.nvmlDeviceGetUtilizationRates.return_value = util

    mock_pynvml.nvmlDeviceGetTemperature.return_value = 71
    mock_pynvml.nvmlDeviceGetPowerUsage.return_value = 455000  # milliwatts
    mock_pynvml.nvmlDeviceGetPowerManagementLimit.return_value = 575000
    mock_pynvml.nvmlDeviceGetFanSpeed.return_value = 52

    proc = MagicMock()
    proc.pid = 4242
    proc.usedGpuMemory = 20000 * MIB
    mock_pynvml.nvmlDeviceGetComputeRunningProcesses.return_value = [proc]

    return handles


class TestAuth:
    """Test sidecar key authentication."""

    @pytest.mark.parametrize("path", ["/health", "/gpu-info", "/capacity"])
    def test_returns_401_without_key(self, client, path):
        setup_mock_pynvml()
        _init_nvml()

        response = client.get(path)
        assert response.status_code == 401

    @pytest.mark.parametrize("path", ["/health", "/gpu-info", "/capacity"])
    def test_returns_401_with_wrong_key(self, client, path):
        setup_mock_pynvml()
        _init_nvml()

        response = client.get(path, headers={"X-Sidecar-Key": "wrong-key"})
        assert response.status_code == 401

    def test_gpu_info_returns_200_with_correct_key(self, client):
        setup_mock_pynvml()
        _init_nvml()

        response = client.get("/gpu-info", headers=AUTH_HEADER)
        assert response.status_code == 200


class TestHealth:
    """Test /health endpoint."""

    def test_health_when_initialized(self, client):
        setup_mock_pynvml(device_count=2)
        _init_nvml()

        response = client.get("/health", headers=AUTH_HEADER)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu_count"] == 2
        assert data["primary_index"] == 0

    def test_health_when_not_initialized(self, client):
        response = client.get("/health", headers=AUTH_HEADER)
        assert response.status_code == 503
        assert response.json()["status"] == "error"

    def test_health_after_init_failure(self, client):
        mock_pynvml.nvmlInit.side_effect = Exception("No NVIDIA driver")
        _init_nvml()

        response = client.get("/health", headers=AUTH_HEADER)
        assert response.status_code == 503
        assert "No NVIDIA driver" in response.json()["error"]


class TestGpuInfo:
    """Test /gpu-info endpoint."""

    def test_gpu_info_when_not_initialized(self, client):
        response = client.get("/gpu-info", headers=AUTH_HEADER)
        assert response.status_code == 503
        data = response.json()
        assert data["gpu_count"] == 0
        assert data["gpus"] == []

    def test_gpu_info_reports_mib(self, client):
        setup_mock_pynvml()
        _init_nvml()

        data = client.get("/gpu-info", headers=AUTH_HEADER).json()
        gpu = data["gpus"][0]

        assert data["driver_version"] == "570.86.10"
        assert data["cuda_version"] == "12.8"
        assert gpu["name"] == "NVIDIA GeForce RTX 5090"
        assert gpu["memory_total_mb"] == 32607
        assert gpu["memory_used_mb"] == 20607
        assert gpu["memory_free_mb"] == 12000
        assert gpu["temperature_gpu"] == 71
        assert gpu["power_draw_watts"] == 455.0
        assert gpu["power_limit_watts"] == 575.0
        assert gpu["processes"] == [{"pid": 4242, "vram_used_mb": 20000}]

    def test_primary_device_listed_first(self, client):
        setup_mock_pynvml(device_count=3)
        _init_nvml()
        gpu_agent.PRIMARY_DEVICE_INDEX = 2

        data = client.get("/gpu-info", headers=AUTH_HEADER).json()

        assert [g["index"] for g in data["gpus"]] == [2, 0, 1]

    def test_gpu_info_handles_per_gpu_failure(self, client):
        setup_mock_pynvml(device_count=2)
        _init_nvml()

        original_side_effect = mock_pynvml.nvmlDeviceGetHandleByIndex.side_effect

        def failing_handle(i):
            if i == 1:
                raise Exception("GPU 1 failed")
            return original_side_effect(i)

        mock_pynvml.nvmlDeviceGetHandleByIndex.side_effect = failing_handle

        response = client.get("/gpu-info", headers=AUTH_HEADER)
        assert response.status_code == 200
        data = response.json()

        assert len(data["gpus"]) == 2
        assert data["gpus"][0]["name"] == "NVIDIA GeForce RTX 5090"
        assert "error" in data["gpus"][1]


class TestCapacity:
    """Test /capacity endpoint."""

    def test_capacity_summary(self, client):
        setup_mock_pynvml()
        _init_nvml()

        response = client.get("/capacity", headers=AUTH_HEADER)
        assert response.status_code == 200
        data = response.json()

        assert data["vram_total_mb"] == 32607
        assert data["vram_free_mb"] == 12000
        assert data["temperature_c"] == 71
        assert data["power_w"] == 455.0
        assert data["utilization_pct"] == 88

    def test_capacity_when_not_initialized(self, client):
        response = client.get("/capacity", headers=AUTH_HEADER)
        assert response.status_code == 503

    def test_capacity_missing_primary_device(self, client):
        setup_mock_pynvml(device_count=1)
        _init_nvml()
        gpu_agent.PRIMARY_DEVICE_INDEX = 3

        response = client.get("/capacity", headers=AUTH_HEADER)
        assert response.status_code == 404


class TestInitNvml:
    """Test _init_nvml function."""

    def test_successful_init(self):
        setup_mock_pynvml(device_count=1)
        _init_nvml()

        assert gpu_agent._initialized is True
        assert gpu_agent._driver_version == "570.86.10"
        assert gpu_agent._cuda_version == "12.8"
        assert gpu_agent._device_count == 1

    def test_cuda_version_conversion(self):
        """Integer CUDA versions are converted to strings."""
        mock_pynvml.nvmlSystemGetDriverVersion.return_value = "550.54.15"
        mock_pynvml.nvmlSystemGetCudaDriverVersion_v2.return_value = 11080
        mock_pynvml.nvmlDeviceGetCount.return_value = 1

        _init_nvml()

        assert gpu_agent._cuda_version == "11.8"

    def test_failed_init(self):
        mock_pynvml.nvmlInit.side_effect = Exception("No NVIDIA driver found")
        _init_nvml()

        assert gpu_agent._initialized is False
        assert "No NVIDIA driver found" in gpu_agent._init_error


class TestGetGpuInfoFunction:
    """Test _get_gpu_info helper function."""

    def test_handles_individual_metric_failures(self):
        """Each metric failure results in None, not a crash."""
        setup_mock_pynvml()

        mock_pynvml.nvmlDeviceGetTemperature.side_effect = Exception("Not supported")
        mock_pynvml.nvmlDeviceGetMemoryInfo.side_effect = Exception("Not supported")

        info = _get_gpu_info(0)

        assert info["name"] == "NVIDIA GeForce RTX 5090"
        assert info["utilization_gpu"] == 88
        assert info["temperature_gpu"] is None
        assert info["memory_free_mb"] is None
