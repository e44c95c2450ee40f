############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# pipeline.py: Generate, evaluate and bounded-rerender image pipeline
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""
Image generation pipeline.

classify intent -> build GenerationSpec -> render under an accelerator
lease -> binary checks -> rerender only when a required check failed ->
persist. At most two renders per spec; the best attempt ships even when
every attempt failed, carrying its failure reasons as metadata.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tandem.app.core.arbiter import AcceleratorArbiter, AcceleratorBusy, WorkloadClass
from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.events import EventChannel, busy_event, check_event, phase_event
from tandem.app.core.telemetry import metrics
from tandem.app.core.telemetry.adapters.diffusion import (
    FLUX_MODES,
    DiffusionClient,
    FluxMode,
)
from tandem.app.core.telemetry.adapters.errors import SidecarError
from tandem.app.core.vision.evaluator import (
    CheckResult,
    EvaluationReport,
    ImageEvaluator,
    build_refinement_prompt,
)
from tandem.app.core.vision.intent import IntentResult, Pipeline, classify_intent
from tandem.app.core.vision.spec import (
    GenerationSpec,
    SpecBuilder,
    SpecFallback,
    minimal_spec,
)
from tandem.app.logging_config import get_logger
from tandem.app.storage.artifacts import Artifact, ArtifactStorage
from tandem.app.storage.sessions import GenerationRecord, SessionStore

logger = get_logger(__name__)

MAX_RENDER_ATTEMPTS = 2
AUDIT_COMPONENT = "vision"


@dataclass
class VisionJob:
    request_id: str
    prompt: str
    session_id: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    flux_mode: FluxMode = FLUX_MODES["schnell"]
    render_budget: int = MAX_RENDER_ATTEMPTS


@dataclass
class PreparedJob:
    job: VisionJob
    intent: IntentResult
    spec: GenerationSpec
    spec_fallback: bool = False
    spec_error: Optional[str] = None
    previous_spec: Optional[GenerationSpec] = None


@dataclass
class RenderAttempt:
    number: int
    prompt: str
    image_bytes: bytes
    seed: Optional[int]
    elapsed: float
    report: EvaluationReport

    @property
    def required_failures(self) -> int:
        return self.report.required_failures


@dataclass
class RenderOutcome:
    best: RenderAttempt
    attempts: int
    stopped_early: Optional[str] = None  # busy, sidecar_error

    @property
    def passed(self) -> bool:
        return self.best.report.passed


@dataclass
class PipelineResult:
    request_id: str
    session_id: str
    artifact: Artifact
    intent: IntentResult
    spec: GenerationSpec
    spec_fallback: bool
    attempts: int
    passed: bool
    fail_reasons: List[str] = field(default_factory=list)
    evaluation: Dict[str, Any] = field(default_factory=dict)
    seed: Optional[int] = None
    elapsed_ms: int = 0
    stopped_early: Optional[str] = None

    def to_event_fields(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "artifact": self.artifact.path,
            "hash": self.artifact.content_hash,
            "seed": self.seed,
            "dimensions": {
                "width": self.spec.dimensions.width,
                "height": self.spec.dimensions.height,
            },
            "pipeline": self.intent.pipeline.value,
            "attempts": self.attempts,
            "passed": self.passed,
            "fail_reasons": self.fail_reasons,
            "evaluation": self.evaluation,
            "spec_fallback": self.spec_fallback,
            "elapsed_ms": self.elapsed_ms,
        }


def _pick_best(best: Optional[RenderAttempt], attempt: RenderAttempt) -> RenderAttempt:
    """Fewest required failures wins; the later attempt wins ties."""
    if best is None or attempt.required_failures <= best.required_failures:
        return attempt
    return best


class GenerationPipeline:
    """Runs one image request end to end."""

    def __init__(
        self,
        arbiter: AcceleratorArbiter,
        diffusion: DiffusionClient,
        spec_builder: SpecBuilder,
        evaluator: ImageEvaluator,
        artifacts: ArtifactStorage,
        sessions: Optional[SessionStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.arbiter = arbiter
        self.diffusion = diffusion
        self.spec_builder = spec_builder
        self.evaluator = evaluator
        self.artifacts = artifacts
        self.sessions = sessions
        self._audit = audit

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    async def _load_previous_spec(self, session_id: Optional[str]) -> Optional[GenerationSpec]:
        if not session_id or self.sessions is None:
            return None
        state = await self.sessions.load(session_id)
        if state is None or state.last_spec is None:
            return None
        try:
            return GenerationSpec.model_validate(state.last_spec)
        except ValueError as e:
            logger.warning("session_spec_invalid", session_id=session_id, error=str(e))
            return None

    async def prepare(self, job: VisionJob, channel: EventChannel) -> PreparedJob:
        """Classify the request and build its GenerationSpec."""
        previous = await self._load_previous_spec(job.session_id)

        channel.emit(phase_event("intent", "active"))
        intent = classify_intent(job.prompt, session_has_image=previous is not None)
        channel.emit(
            phase_event(
                "intent",
                "complete",
                {**intent.to_dict(), "flux_mode": job.flux_mode.name, "steps": job.flux_mode.steps},
            )
        )

        spec_fallback = False
        spec_error = None
        if intent.skip_feedback_loop:
            spec = minimal_spec(job.prompt)
            channel.emit(phase_event("spec", "skipped", {"reason": "high_confidence_simple"}))
        else:
            channel.emit(phase_event("spec", "active"))
            built = await self.spec_builder.build(job.prompt, intent, previous)
            spec = built.spec
            if isinstance(built, SpecFallback):
                spec_fallback = True
                spec_error = built.error
            channel.emit(
                phase_event(
                    "spec",
                    "complete",
                    {
                        "regions": len(spec.regions),
                        "text_boxes": len(spec.text_boxes),
                        "style": spec.style,
                        "fallback": spec_fallback,
                    },
                )
            )

        overrides: Dict[str, Any] = {}
        if job.width or job.height:
            overrides["dimensions"] = spec.dimensions.model_copy(
                update={
                    "width": job.width or spec.dimensions.width,
                    "height": job.height or spec.dimensions.height,
                }
            )
        if job.negative_prompt:
            overrides["negative_prompt"] = job.negative_prompt
        if overrides:
            spec = spec.model_copy(update=overrides)

        return PreparedJob(
            job=job,
            intent=intent,
            spec=spec,
            spec_fallback=spec_fallback,
            spec_error=spec_error,
            previous_spec=previous,
        )

    async def _render_once(
        self,
        prepared: PreparedJob,
        prompt: str,
        seed: Optional[int],
        channel: EventChannel,
    ):
        job, spec = prepared.job, prepared.spec
        async with self.arbiter.lease(job.request_id, WorkloadClass.DIFFUSION):
            result = await self.diffusion.render(
                prompt=prompt,
                negative_prompt=spec.negative_prompt,
                width=spec.dimensions.width,
                height=spec.dimensions.height,
                steps=job.flux_mode.steps,
                guidance_scale=job.flux_mode.guidance_scale,
                seed=seed,
                request_id=job.request_id,
            )
            if prepared.intent.pipeline is Pipeline.TEXT and spec.text_boxes:
                channel.emit(phase_event("composite", "active"))
                try:
                    result.image_bytes = await self.diffusion.composite_text(
                        result.image_bytes, spec.text_boxes_px(), request_id=job.request_id
                    )
                    channel.emit(
                        phase_event("composite", "complete", {"texts_rendered": len(spec.text_boxes)})
                    )
                except SidecarError as e:
                    # The image is still usable without the overlay
                    channel.emit(phase_event("composite", "warning", {"reason": str(e)}))
        return result

    async def render_and_evaluate(self, prepared: PreparedJob, channel: EventChannel) -> RenderOutcome:
        """
        Render, check, and rerender while a required check fails and the
        budget allows.

        Raises:
            AcceleratorBusy: if the first render could not get the accelerator
            SidecarError: if the first render failed
        """
        job = prepared.job
        budget = max(1, min(job.render_budget, MAX_RENDER_ATTEMPTS))
        prompt = prepared.spec.prompt
        seed = job.seed
        best: Optional[RenderAttempt] = None
        stopped_early: Optional[str] = None
        attempts = 0

        for number in range(1, budget + 1):
            channel.emit(
                phase_event("render", "active", {"attempt": number, "steps": job.flux_mode.steps})
            )
            try:
                rendered = await self._render_once(prepared, prompt, seed, channel)
            except AcceleratorBusy as e:
                if best is None:
                    raise
                channel.emit(busy_event(e.result.reason or "busy", e.result.holder, e.result.elapsed_ms))
                channel.emit(phase_event("render", "blocked", {"attempt": number}))
                logger.info("rerender_skipped_busy", request_id=job.request_id, attempt=number)
                stopped_early = "busy"
                break
            except SidecarError as e:
                channel.emit(phase_event("render", "error", {"attempt": number, "error": str(e)}))
                if best is None:
                    raise
                logger.warning("rerender_failed", request_id=job.request_id, error=str(e))
                stopped_early = "sidecar_error"
                break

            attempts = number
            metrics.RENDER_ATTEMPTS.labels(attempt=str(number)).inc()
            channel.emit(
                phase_event(
                    "render",
                    "complete",
                    {"attempt": number, "elapsed": rendered.elapsed, "seed": rendered.seed},
                )
            )

            if prepared.intent.skip_feedback_loop and number == 1:
                report = EvaluationReport(skipped=True)
                channel.emit(phase_event("evaluate", "skipped", {"reason": "high_confidence_simple"}))
            else:
                channel.emit(phase_event("evaluate", "active", {"attempt": number}))

                def on_check(name: str, result: CheckResult) -> None:
                    channel.emit(check_event(name, result.status.value, result.reason))

                report = await self.evaluator.evaluate(
                    rendered.image_bytes,
                    prepared.spec,
                    request_id=job.request_id,
                    on_check=on_check,
                )
                channel.emit(
                    phase_event(
                        "evaluate",
                        "complete",
                        {"passed": report.passed, "fail_count": report.required_failures, "attempt": number},
                    )
                )

            attempt = RenderAttempt(
                number=number,
                prompt=prompt,
                image_bytes=rendered.image_bytes,
                seed=rendered.seed,
                elapsed=rendered.elapsed,
                report=report,
            )
            best = _pick_best(best, attempt)

            if not report.should_rerender:
                break
            prompt = build_refinement_prompt(prepared.spec.prompt, report)
            seed = None

        if best is None:
            raise RuntimeError(f"no render attempt completed for {job.request_id}")
        return RenderOutcome(best=best, attempts=attempts, stopped_early=stopped_early)

    async def persist(
        self,
        prepared: PreparedJob,
        outcome: RenderOutcome,
        channel: EventChannel,
        started: float,
    ) -> PipelineResult:
        """Save the shipped image and the session's spec continuity."""
        job, best = prepared.job, outcome.best
        session_id = job.session_id or job.request_id

        channel.emit(phase_event("storage", "active"))
        artifact = await self.artifacts.save(
            best.image_bytes,
            {
                "request_id": job.request_id,
                "session_id": session_id,
                "prompt": best.prompt,
                "seed": best.seed,
                "steps": job.flux_mode.steps,
                "flux_mode": job.flux_mode.name,
                "pipeline": prepared.intent.pipeline.value,
                "attempt": best.number,
                "attempts": outcome.attempts,
                "passed": best.report.passed,
                "fail_reasons": best.report.fail_reasons,
                "spec_fallback": prepared.spec_fallback,
            },
        )
        if self.sessions is not None:
            await self.sessions.record_generation(
                session_id,
                GenerationRecord(
                    prompt=job.prompt,
                    spec=prepared.spec.model_dump(),
                    seed=best.seed,
                    artifact_path=artifact.path,
                    passed=best.report.passed,
                ),
            )
        channel.emit(phase_event("storage", "complete", {"artifact": artifact.path}))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.audit.record(
            AUDIT_COMPONENT,
            "generate",
            {
                "request_id": job.request_id,
                "result": "success" if best.report.passed else "partial",
                "pipeline": prepared.intent.pipeline.value,
                "seed": best.seed,
                "attempts": outcome.attempts,
                "elapsed_ms": elapsed_ms,
                "artifact_hash": artifact.content_hash,
            },
        )
        return PipelineResult(
            request_id=job.request_id,
            session_id=session_id,
            artifact=artifact,
            intent=prepared.intent,
            spec=prepared.spec,
            spec_fallback=prepared.spec_fallback,
            attempts=outcome.attempts,
            passed=best.report.passed,
            fail_reasons=best.report.fail_reasons,
            evaluation=best.report.to_dict(),
            seed=best.seed,
            elapsed_ms=elapsed_ms,
            stopped_early=outcome.stopped_early,
        )

    async def run(self, job: VisionJob, channel: EventChannel) -> PipelineResult:
        """Run every stage. Raises AcceleratorBusy or SidecarError only when nothing rendered."""
        started = time.monotonic()
        prepared = await self.prepare(job, channel)
        outcome = await self.render_and_evaluate(prepared, channel)
        return await self.persist(prepared, outcome, channel, started)
