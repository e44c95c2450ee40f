############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# registry.py: Process-wide wiring of sidecar clients and services
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Service registry.

Builds the sidecar clients, the accelerator arbiter, storage and the
chat/vision services once per process, and runs the periodic artifact
retention sweep.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from tandem.app.core.arbiter import (
    AcceleratorArbiter,
    WorkloadClass,
    get_profile,
    init_arbiter,
    shutdown_arbiter,
)
from tandem.app.core.audit import get_audit_sink
from tandem.app.core.telemetry.adapters import DiffusionClient, OllamaAdapter, SidecarClient
from tandem.app.core.vision import GenerationPipeline, ImageEvaluator, SpecBuilder
from tandem.app.logging_config import get_logger
from tandem.app.services.chat import ChatService
from tandem.app.services.vision import VisionService
from tandem.app.settings import Settings, get_settings
from tandem.app.storage import ArtifactStorage, SessionStore
from tandem.app.storage.artifacts import get_artifact_storage
from tandem.app.storage.sessions import get_session_store

logger = get_logger(__name__)


@dataclass
class ServiceRegistry:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    ollama: OllamaAdapter
    diffusion: DiffusionClient
    gpu_agent: SidecarClient
    arbiter: AcceleratorArbiter
    artifacts: ArtifactStorage
    sessions: SessionStore
    chat: ChatService
    vision: VisionService
    _cleanup_task: Optional[asyncio.Task] = None

    async def _cleanup_loop(self) -> None:
        interval = self.settings.vision_cleanup_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.vision.cleanup()
            except Exception as e:
                logger.error("retention_sweep_failed", error=str(e))

    def start_cleanup(self) -> None:
        if self._cleanup_task is None and self.settings.vision_cleanup_interval > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.ollama.close()
        await self.diffusion.close()
        await self.gpu_agent.close()


_registry: Optional[ServiceRegistry] = None


def get_services() -> ServiceRegistry:
    """Get the global service registry."""
    if _registry is None:
        raise RuntimeError("Services are not initialized")
    return _registry


def build_services(settings: Optional[Settings] = None) -> ServiceRegistry:
    """Construct clients, the arbiter and the services without starting anything."""
    settings = settings or get_settings()
    profile = get_profile(settings.accelerator_profile)
    audit = get_audit_sink()

    ollama = OllamaAdapter(
        settings.text_sidecar_url,
        timeout=settings.text_sidecar_timeout,
        control_timeout=settings.text_sidecar_control_timeout,
    )
    diffusion = DiffusionClient(
        settings.diffusion_sidecar_url,
        timeout=settings.diffusion_sidecar_timeout,
        composite_timeout=settings.diffusion_composite_timeout,
    )
    gpu_agent = SidecarClient(
        settings.gpu_agent_url,
        timeout=settings.gpu_agent_timeout,
        sidecar_key=settings.gpu_agent_key,
    )

    async def evict_text():
        return await ollama.evict_models(profile.eviction_exempt)

    arbiter = init_arbiter(
        profile,
        capacity_probe=gpu_agent.get_capacity,
        evictors={
            WorkloadClass.TEXT: evict_text,
            WorkloadClass.DIFFUSION: diffusion.unload,
        },
        lock_timeout_s=settings.lock_timeout_seconds,
        capacity_ttl_s=settings.capacity_cache_seconds,
    )

    artifacts = get_artifact_storage()
    sessions = get_session_store()
    pipeline = GenerationPipeline(
        arbiter=arbiter,
        diffusion=diffusion,
        spec_builder=SpecBuilder(
            ollama,
            settings.resolve_model(settings.spec_model),
            timeout=settings.vision_spec_timeout,
        ),
        evaluator=ImageEvaluator(
            ollama,
            settings.resolve_model(settings.eval_model),
            timeout=settings.vision_eval_timeout,
            audit=audit,
        ),
        artifacts=artifacts,
        sessions=sessions,
        audit=audit,
    )

    return ServiceRegistry(
        settings=settings,
        ollama=ollama,
        diffusion=diffusion,
        gpu_agent=gpu_agent,
        arbiter=arbiter,
        artifacts=artifacts,
        sessions=sessions,
        chat=ChatService(ollama, arbiter, sessions=sessions, audit=audit, settings=settings),
        vision=VisionService(pipeline, arbiter, audit=audit, settings=settings),
    )


async def init_services(settings: Optional[Settings] = None) -> ServiceRegistry:
    """Build the global registry, prepare storage and start the retention sweep."""
    global _registry
    registry = build_services(settings)
    await registry.artifacts.initialize()
    await registry.sessions.initialize()
    registry.start_cleanup()
    _registry = registry
    logger.info(
        "services_initialized",
        profile=registry.arbiter.profile.name,
        text_sidecar=registry.settings.text_sidecar_url,
        diffusion_sidecar=registry.settings.diffusion_sidecar_url,
    )
    return registry


async def shutdown_services() -> None:
    """Stop background work, close sidecar clients and drop the arbiter."""
    global _registry
    if _registry is not None:
        await _registry.stop()
        _registry = None
    shutdown_arbiter()
