############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# gpu_agent.py: Accelerator metrics agent using pynvml
#
# Runs next to the text and diffusion sidecars and exposes the
# shared accelerator's VRAM, thermal and power state over a
# small HTTP API. The Tandem arbiter polls /gpu-info to make
# admission and model-sizing decisions.
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Accelerator metrics agent using NVIDIA Management Library (pynvml)."""

import os
import secrets
import socket
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

MIB = 1024**2


def _read_agent_version() -> str:
    """Read version from VERSION file in the sidecar directory."""
    try:
        version_file = Path(__file__).resolve().parent / "VERSION"
        return version_file.read_text().strip()
    except Exception:
        return "0.0.0"


AGENT_VERSION = _read_agent_version()

# Require SIDECAR_SECRET_KEY at startup
SIDECAR_SECRET_KEY = os.environ.get("SIDECAR_SECRET_KEY", "").strip()
if not SIDECAR_SECRET_KEY:
    print(
        "FATAL: SIDECAR_SECRET_KEY environment variable is required but not set.\n"
        "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\"",
        file=sys.stderr,
    )
    sys.exit(1)

# Index of the accelerator shared by the text and diffusion sidecars
PRIMARY_DEVICE_INDEX = int(os.environ.get("GPU_AGENT_DEVICE_INDEX", "0"))


async def verify_sidecar_key(x_sidecar_key: Optional[str] = Header(None)) -> None:
    """Validate the X-Sidecar-Key header against the configured secret."""
    if x_sidecar_key is None or not secrets.compare_digest(
        x_sidecar_key, SIDECAR_SECRET_KEY
    ):
        raise HTTPException(status_code=401, detail="Invalid or missing sidecar key")


app = FastAPI(title="Tandem GPU Agent", version=AGENT_VERSION)

# NVML state cached at startup
_initialized = False
_init_error: Optional[str] = None
_driver_version: Optional[str] = None
_cuda_version: Optional[str] = None
_device_count: int = 0


def _init_nvml() -> None:
    """Initialize NVML library and cache static info."""
    global _initialized, _init_error, _driver_version, _cuda_version, _device_count

    try:
        import pynvml
        pynvml.nvmlInit()
        _driver_version = pynvml.nvmlSystemGetDriverVersion()
        _cuda_version = pynvml.nvmlSystemGetCudaDriverVersion_v2()
        # 12040 -> "12.4"
        if isinstance(_cuda_version, int):
            major = _cuda_version // 1000
            minor = (_cuda_version % 1000) // 10
            _cuda_version = f"{major}.{minor}"
        _device_count = pynvml.nvmlDeviceGetCount()
        _initialized = True
    except Exception as e:
        _init_error = str(e)
        _initialized = False


def _query(call: Callable[..., Any], *args: Any) -> Any:
    """One NVML query; None when the device does not support it."""
    try:
        return call(*args)
    except Exception:
        return None


def _mib(value: Optional[int]) -> Optional[int]:
    return None if value is None else int(value // MIB)


def _watts(milliwatts: Optional[int]) -> Optional[float]:
    return None if milliwatts is None else round(milliwatts / 1000.0, 1)


def _get_gpu_info(index: int) -> Dict[str, Any]:
    """Collect metrics for one device. Memory figures are MiB."""
    import pynvml

    handle = pynvml.nvmlDeviceGetHandleByIndex(index)

    name = _query(pynvml.nvmlDeviceGetName, handle)
    mem = _query(pynvml.nvmlDeviceGetMemoryInfo, handle)
    util = _query(pynvml.nvmlDeviceGetUtilizationRates, handle)

    # Processes holding VRAM (Ollama runners, the diffusion worker)
    procs = _query(pynvml.nvmlDeviceGetComputeRunningProcesses, handle) or []

    return {
        "index": index,
        "name": name.decode() if isinstance(name, bytes) else name,
        "uuid": _query(pynvml.nvmlDeviceGetUUID, handle),
        "memory_total_mb": _mib(mem.total) if mem is not None else None,
        "memory_used_mb": _mib(mem.used) if mem is not None else None,
        "memory_free_mb": _mib(mem.free) if mem is not None else None,
        "utilization_gpu": util.gpu if util is not None else None,
        "utilization_memory": util.memory if util is not None else None,
        "temperature_gpu": _query(
            pynvml.nvmlDeviceGetTemperature, handle, pynvml.NVML_TEMPERATURE_GPU
        ),
        "power_draw_watts": _watts(_query(pynvml.nvmlDeviceGetPowerUsage, handle)),
        "power_limit_watts": _watts(_query(pynvml.nvmlDeviceGetPowerManagementLimit, handle)),
        "fan_speed_percent": _query(pynvml.nvmlDeviceGetFanSpeed, handle),
        "processes": [
            {"pid": p.pid, "vram_used_mb": _mib(p.usedGpuMemory) if p.usedGpuMemory else None}
            for p in procs
        ],
    }


def _not_initialized_response(**extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"error": _init_error or "NVML not initialized", **extra},
    )


@app.on_event("startup")
async def startup():
    """Initialize NVML on startup."""
    _init_nvml()


@app.get("/health")
async def health(_: None = Depends(verify_sidecar_key)):
    """Health check endpoint."""
    if _initialized:
        return {
            "status": "ok",
            "gpu_count": _device_count,
            "primary_index": PRIMARY_DEVICE_INDEX,
            "agent_version": AGENT_VERSION,
        }
    return JSONResponse(
        status_code=503,
        content={
            "status": "error",
            "error": _init_error or "NVML not initialized",
            "agent_version": AGENT_VERSION,
        },
    )


@app.get("/gpu-info")
async def gpu_info(_: None = Depends(verify_sidecar_key)):
    """
    Device report, shared accelerator first.

    The arbiter reads the first entry of ``gpus`` as the accelerator
    it schedules, so the primary device is moved to the front.
    """
    if not _initialized:
        return _not_initialized_response(hostname=socket.gethostname(), gpu_count=0, gpus=[])

    gpus: List[Dict[str, Any]] = []
    for i in range(_device_count):
        try:
            gpus.append(_get_gpu_info(i))
        except Exception as e:
            gpus.append({"index": i, "error": str(e)})
    gpus.sort(key=lambda g: g["index"] != PRIMARY_DEVICE_INDEX)

    return {
        "hostname": socket.gethostname(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "driver_version": _driver_version,
        "cuda_version": _cuda_version,
        "gpu_count": _device_count,
        "gpus": gpus,
        "agent_version": AGENT_VERSION,
    }


@app.get("/capacity")
async def capacity(_: None = Depends(verify_sidecar_key)):
    """Compact VRAM/thermal summary of the shared accelerator."""
    if not _initialized:
        return _not_initialized_response()
    if not 0 <= PRIMARY_DEVICE_INDEX < _device_count:
        return JSONResponse(
            status_code=404,
            content={"error": f"device {PRIMARY_DEVICE_INDEX} not present ({_device_count} devices)"},
        )

    try:
        info = _get_gpu_info(PRIMARY_DEVICE_INDEX)
    except Exception as e:
        return JSONResponse(status_code=500, content={"error": str(e)})

    return {
        "name": info["name"],
        "vram_total_mb": info["memory_total_mb"],
        "vram_used_mb": info["memory_used_mb"],
        "vram_free_mb": info["memory_free_mb"],
        "temperature_c": info["temperature_gpu"],
        "power_w": info["power_draw_watts"],
        "utilization_pct": info["utilization_gpu"],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("GPU_AGENT_PORT", "8007"))
    host = os.environ.get("GPU_AGENT_HOST", "0.0.0.0")
    uvicorn.run(app, host=host, port=port)
