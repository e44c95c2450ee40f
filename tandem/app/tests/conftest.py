############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# conftest.py: Pytest configuration and shared test fixtures
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pytest configuration and shared fixtures for Tandem tests."""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from tandem.app.core.arbiter import AcceleratorArbiter, get_profile
from tandem.app.core.audit import AuditSink
from tandem.app.core.events import EventChannel
from tandem.app.core.telemetry.adapters import OllamaAdapter
from tandem.app.core.telemetry.models import CapacitySnapshot
from tandem.app.settings import Settings


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_snapshot(
    free_mb: int = 30000,
    total_mb: int = 32607,
    temperature_c: float = 55.0,
) -> CapacitySnapshot:
    return CapacitySnapshot(
        vram_total_mb=total_mb,
        vram_used_mb=total_mb - free_mb,
        vram_free_mb=free_mb,
        temperature_c=temperature_c,
        name="NVIDIA GeForce RTX 5090",
    )


@pytest.fixture
def audit() -> AuditSink:
    return AuditSink(capacity=200)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def profile():
    return get_profile("rtx5090")


@pytest.fixture
def make_arbiter(profile, audit, clock):
    """Factory for arbiters backed by a fixed capacity snapshot."""

    def _make(
        snapshot: Optional[CapacitySnapshot] = None,
        lock_timeout_s: float = 120.0,
    ) -> AcceleratorArbiter:
        probe = AsyncMock(return_value=snapshot or make_snapshot())
        return AcceleratorArbiter(
            profile,
            capacity_probe=probe,
            lock_timeout_s=lock_timeout_s,
            capacity_ttl_s=3.0,
            audit=audit,
            clock=clock,
        )

    return _make


@pytest.fixture
def arbiter(make_arbiter) -> AcceleratorArbiter:
    return make_arbiter()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment, with storage under tmp_path."""
    return Settings(
        _env_file=None,
        artifact_storage_path=str(tmp_path / "artifacts"),
        session_storage_path=str(tmp_path / "sessions"),
        vision_cleanup_interval=0,
        model_aliases={},
    )


@pytest.fixture
def mock_ollama():
    """Text sidecar adapter with every call mocked."""
    adapter = MagicMock(spec=OllamaAdapter)
    adapter.complete = AsyncMock(return_value="")
    adapter.list_loaded_models = AsyncMock(return_value=[])
    adapter.evict_models = AsyncMock(return_value=[])
    adapter.health_check = AsyncMock(return_value=True)
    return adapter


@pytest.fixture
def drain():
    """Collect every event from a finished channel."""

    async def _drain(channel: EventChannel) -> List[Dict[str, Any]]:
        return [event async for event in channel]

    return _drain


@pytest.fixture
def sample_chat_messages():
    """Sample chat messages for testing."""
    return [
        {"role": "user", "content": "What is the capital of Idaho?"},
    ]


@pytest.fixture
def snapshot_of():
    """Factory for capacity snapshots: ``snapshot_of(free_mb=..., temperature_c=...)``."""
    return make_snapshot
