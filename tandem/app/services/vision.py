############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# vision.py: Image generation request service
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Vision service - maps the generation pipeline onto the request lifecycle.

Pipeline stages drive the controller: building the GenerationSpec completes
PLANNING, the render/evaluate loop completes VERIFYING (quality failures
still ship, flagged in the result), and persisting commits. The pipeline
leases the accelerator per render, so the controller never holds the
lock for a vision request.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from tandem.app.core.arbiter import AcceleratorArbiter, AcceleratorBusy, ThermalStatus
from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.cancellation import CancellationToken, RequestCancelled
from tandem.app.core.events import EventChannel, busy_event, error_event, result_event
from tandem.app.core.lifecycle import ControllerEvent, RequestController, WorkloadMode
from tandem.app.core.schemas import VisionRequest
from tandem.app.core.telemetry.adapters import SidecarError, resolve_flux_mode
from tandem.app.core.vision import GenerationPipeline, VisionJob
from tandem.app.logging_config import get_logger, request_log_context
from tandem.app.settings import Settings, get_settings
from tandem.app.storage.artifacts import RETENTION_PROFILES, SweepResult

logger = get_logger(__name__)


class VisionService:
    """Runs image requests and answers status/cleanup queries."""

    def __init__(
        self,
        pipeline: GenerationPipeline,
        arbiter: AcceleratorArbiter,
        audit: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        self.pipeline = pipeline
        self.arbiter = arbiter
        self._audit = audit
        self._settings = settings or get_settings()

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    async def run(
        self,
        request: VisionRequest,
        request_id: str,
        channel: EventChannel,
        token: Optional[CancellationToken] = None,
    ) -> RequestController:
        """Process one image request. Always finishes the channel."""
        controller = RequestController(channel=channel, arbiter=self.arbiter)
        controller.initialize(
            request_id,
            WorkloadMode.VISION,
            {"max_retries": self._settings.controller_max_retries, "tier": request.hints.tier},
        )

        try:
            with request_log_context(request_id=request_id):
                await self._process(request, controller, channel, token)
        except asyncio.CancelledError:
            controller.abort("client_disconnected")
            channel.finish(request_id=request_id, aborted=True, state=controller.state.value)
            raise
        except RequestCancelled as e:
            controller.abort(str(e))
            channel.finish(request_id=request_id, aborted=True, state=controller.state.value)
        except Exception as e:
            logger.exception("vision_request_failed", request_id=request_id, error=str(e))
            channel.emit(error_event("Internal error while generating the image"))
            if not controller.is_terminal:
                controller.dispatch(ControllerEvent.ERROR, {"error": str(e)})
                controller.abort(str(e))
        finally:
            channel.finish(request_id=request_id, state=controller.state.value)
        return controller

    def _admission_denial(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Busy details when another request holds a live lock, else None."""
        status = self.arbiter.lock_status()
        if not status.locked or status.holder == request_id:
            return None
        if status.elapsed_ms > self.arbiter.lock_timeout_s * 1000:
            # The first render will force-release the stale lock
            return None
        return {
            "reason": f"accelerator locked by request {status.holder} ({status.elapsed_ms // 1000}s ago)",
            "holder": status.holder,
            "elapsed_ms": status.elapsed_ms,
        }

    async def _process(
        self,
        request: VisionRequest,
        controller: RequestController,
        channel: EventChannel,
        token: Optional[CancellationToken],
    ) -> None:
        hints = request.hints
        request_id = controller.request_id
        started = time.monotonic()

        controller.dispatch(ControllerEvent.REQUEST_RECEIVED, {"tier": hints.tier})
        if hints.blocked:
            reason = hints.block_reason or "Request blocked by policy"
            controller.dispatch(ControllerEvent.THREAT_DETECTED, {"error": reason})
            channel.emit(error_event(reason))
            channel.finish(request_id=request_id, blocked=True, state=controller.state.value)
            return
        controller.dispatch(ControllerEvent.SCAN_COMPLETE)

        advisory = await self.arbiter.thermal_advisory()
        denial: Optional[Dict[str, Any]] = None
        if advisory.status is ThermalStatus.CRITICAL:
            denial = {"reason": f"thermal_critical: {advisory.recommendation}"}
        else:
            denial = self._admission_denial(request_id)
        if denial is not None:
            logger.info("vision_admission_denied", request_id=request_id, reason=denial["reason"])
            channel.emit(busy_event(**denial))
            controller.dispatch(ControllerEvent.ADMISSION_DENIED, {"error": denial["reason"]})
            controller.dispatch(ControllerEvent.REPORT_COMPLETE)
            channel.finish(request_id=request_id, busy=True, state=controller.state.value)
            return
        controller.dispatch(ControllerEvent.ROUTE_COMPLETE)

        policy = self._settings.get_tier_policy(hints.tier)
        job = VisionJob(
            request_id=request_id,
            prompt=request.prompt,
            session_id=request.session_id,
            width=request.width,
            height=request.height,
            seed=request.seed,
            negative_prompt=request.negative_prompt,
            flux_mode=resolve_flux_mode(request.flux_mode, bool(policy["flux_dev"])),
            render_budget=policy["render_attempts"],
        )

        prepared = await self.pipeline.prepare(job, channel)
        controller.dispatch(
            ControllerEvent.PLAN_COMPLETE,
            {"pipeline": prepared.intent.pipeline.value, "spec_fallback": prepared.spec_fallback},
        )
        if token is not None:
            token.raise_if_cancelled()

        try:
            outcome = await self.pipeline.render_and_evaluate(prepared, channel)
        except AcceleratorBusy as e:
            busy = e.result
            channel.emit(busy_event(busy.reason or "accelerator busy", busy.holder, busy.elapsed_ms))
            controller.abort(busy.reason or "accelerator busy")
            channel.finish(request_id=request_id, busy=True, state=controller.state.value)
            return
        except SidecarError as e:
            logger.warning("vision_render_failed", request_id=request_id, error=str(e))
            channel.emit(error_event(f"Image generation failed: {e}"))
            controller.dispatch(ControllerEvent.ERROR, {"error": str(e)})
            channel.finish(request_id=request_id, state=controller.state.value)
            return

        controller.dispatch(
            ControllerEvent.JUDGE_PASS,
            {"quality_passed": outcome.passed, "attempts": outcome.attempts},
        )
        controller.dispatch(ControllerEvent.SIM_PASS)

        result = await self.pipeline.persist(prepared, outcome, channel, started)
        channel.emit(result_event(**result.to_event_fields()))
        controller.dispatch(ControllerEvent.COMMIT_COMPLETE, {"artifact": result.artifact.path})
        controller.dispatch(ControllerEvent.REPORT_COMPLETE)
        channel.finish(
            request_id=request_id,
            artifact=result.artifact.path,
            passed=result.passed,
            attempts=result.attempts,
            elapsed_ms=result.elapsed_ms,
            state=controller.state.value,
        )

    async def status(self) -> Dict[str, Any]:
        """Sidecar health, lock holder, storage stats and recent vision activity."""
        diffusion_ok = await self.pipeline.diffusion.health_check()
        return {
            "diffusion_sidecar": "ok" if diffusion_ok else "unreachable",
            "lock": self.arbiter.lock_status().to_dict(),
            "retention_profile": self._settings.vision_retention_profile,
            "storage": await self.pipeline.artifacts.stats(),
            "recent": [r.to_dict() for r in self.audit.recent(limit=20, component="vision")],
        }

    async def cleanup(self, profile: Optional[str] = None) -> SweepResult:
        """Run the retention sweep for ``profile`` (defaults to the configured one)."""
        profile = profile or self._settings.vision_retention_profile
        if profile not in RETENTION_PROFILES:
            raise ValueError(f"Unknown retention profile: {profile}")
        result = await self.pipeline.artifacts.sweep(profile)
        self.audit.record(
            "vision",
            "cleanup",
            {"profile": profile, "removed": result.removed, "remaining": result.remaining},
        )
        return result
