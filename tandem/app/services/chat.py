############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# chat.py: Chat request service (admission, synthesis, streaming)
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Chat service - drives one chat request from admission to report.

Main-mode requests are executed directly: either streamed from the text
sidecar or, when the tier allows and the caller asks for it, produced by
the synthesis engine. Dev-mode requests are drafted, verified by the
judge model, replanned once on failure and passed through a simulator
before they are committed.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tandem.app.core.arbiter import AcceleratorArbiter, ThermalStatus, WorkloadClass
from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.cancellation import CancellationToken, RequestCancelled
from tandem.app.core.events import (
    EventChannel,
    busy_event,
    error_event,
    phase_event,
    token_event,
)
from tandem.app.core.lifecycle import (
    ControllerEvent,
    RequestController,
    RequestState,
    WorkloadMode,
)
from tandem.app.core.schemas import ChatRequest
from tandem.app.core.synthesis import SynthesisConfig, SynthesisEngine
from tandem.app.core.telemetry.adapters import OllamaAdapter, SidecarError
from tandem.app.core.vision.evaluator import CheckStatus, parse_answer
from tandem.app.logging_config import get_logger, request_log_context
from tandem.app.settings import Settings, get_settings
from tandem.app.storage.sessions import SessionStore

logger = get_logger(__name__)

AUDIT_COMPONENT = "chat"

# Characters per token event when replaying a finished text
REPLAY_CHUNK_CHARS = 16

DEFAULT_SYSTEM_PROMPT = "You are a helpful, precise assistant."

VERIFY_SYSTEM_PROMPT = """You review a draft answer for correctness and completeness.
Reply with exactly one line: PASS or FAIL, followed by a colon and a one-sentence reason.
FAIL only for factual errors, broken code, or parts of the request left unanswered."""

# (prompt, draft) -> (passed, reason)
Verifier = Callable[[str, str], Awaitable[Tuple[bool, str]]]
# draft -> (passed, reason)
Simulator = Callable[[str], Awaitable[Tuple[bool, str]]]

Message = Dict[str, Any]


async def no_simulation(draft: str) -> Tuple[bool, str]:
    """Default simulator: no sandbox is attached, every draft passes."""
    return True, "no simulator configured"


class ChatService:
    """
    Handles chat request processing.

    Responsibilities:
    - Admit the request through the accelerator arbiter
    - Pick a model that fits the current VRAM and thermal state
    - Execute, or draft/verify/replan for dev mode
    - Stream progress on the request's event channel
    - Record session turns and audit entries
    """

    def __init__(
        self,
        adapter: OllamaAdapter,
        arbiter: AcceleratorArbiter,
        sessions: Optional[SessionStore] = None,
        audit: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
        verifier: Optional[Verifier] = None,
        simulator: Optional[Simulator] = None,
    ):
        self.adapter = adapter
        self.arbiter = arbiter
        self.sessions = sessions
        self._audit = audit
        self._settings = settings or get_settings()
        self.verifier = verifier or self.judge_verify
        self.simulator = simulator or no_simulation

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    async def run(
        self,
        request: ChatRequest,
        request_id: str,
        channel: EventChannel,
        token: Optional[CancellationToken] = None,
    ) -> RequestController:
        """
        Process one chat request. Always finishes the channel.

        Returns:
            The request's controller, left in its final state
        """
        controller = RequestController(channel=channel, arbiter=self.arbiter)
        mode = WorkloadMode.DEV if request.hints.mode is WorkloadMode.DEV else WorkloadMode.MAIN
        controller.initialize(
            request_id,
            mode,
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
        except SidecarError as e:
            logger.warning("chat_sidecar_failed", request_id=request_id, error=str(e))
            channel.emit(error_event(str(e)))
            self._fail(controller, str(e))
        except Exception as e:
            logger.exception("chat_request_failed", request_id=request_id, error=str(e))
            channel.emit(error_event("Internal error while processing the request"))
            self._fail(controller, str(e))
        finally:
            if self.arbiter.holds_lock(request_id):
                self.arbiter.release(request_id)
            channel.finish(request_id=request_id, state=controller.state.value)
        return controller

    def _fail(self, controller: RequestController, message: str) -> None:
        if controller.is_terminal or controller.state is RequestState.IDLE:
            return
        controller.dispatch(ControllerEvent.ERROR, {"error": message})
        if not controller.is_terminal:
            controller.abort(message)

    async def _process(
        self,
        request: ChatRequest,
        controller: RequestController,
        channel: EventChannel,
        token: Optional[CancellationToken],
    ) -> None:
        hints = request.hints
        request_id = controller.request_id

        controller.dispatch(
            ControllerEvent.REQUEST_RECEIVED, {"intent": hints.intent, "tier": hints.tier}
        )
        if hints.blocked:
            reason = hints.block_reason or "Request blocked by policy"
            controller.dispatch(ControllerEvent.THREAT_DETECTED, {"error": reason})
            channel.emit(error_event(reason))
            channel.finish(request_id=request_id, blocked=True, state=controller.state.value)
            return
        controller.dispatch(ControllerEvent.SCAN_COMPLETE)

        model = await self._select_model(request, channel)
        if model is None:
            self._deny(controller, channel, "no_model_fits: insufficient free VRAM for any model")
            return

        admission = await controller.acquire_accelerator(
            WorkloadClass.TEXT,
            heavy=model not in self.arbiter.profile.fallback_chain,
        )
        if not admission.acquired:
            self._deny(
                controller,
                channel,
                admission.reason or "accelerator busy",
                holder=admission.holder,
                elapsed_ms=admission.elapsed_ms,
            )
            return
        controller.dispatch(ControllerEvent.ROUTE_COMPLETE, {"model": model})
        if token is not None:
            token.raise_if_cancelled()

        context = await self._context(request)
        if controller.state is RequestState.PLANNING:
            text, fields = await self._run_structured(request, controller, channel, model, context, token)
        else:
            text, fields = await self._run_execute(request, controller, channel, model, context, token)

        await self._report(request, controller, channel, model, text, fields)

    def _deny(
        self,
        controller: RequestController,
        channel: EventChannel,
        reason: str,
        holder: Optional[str] = None,
        elapsed_ms: Optional[int] = None,
    ) -> None:
        logger.info("chat_admission_denied", request_id=controller.request_id, reason=reason)
        channel.emit(busy_event(reason, holder, elapsed_ms))
        controller.dispatch(ControllerEvent.ADMISSION_DENIED, {"error": reason})
        controller.dispatch(ControllerEvent.REPORT_COMPLETE)
        channel.finish(request_id=controller.request_id, busy=True, state=controller.state.value)

    async def _select_model(self, request: ChatRequest, channel: EventChannel) -> Optional[str]:
        """Requested model, downgraded for heat or VRAM pressure."""
        profile = self.arbiter.profile
        requested = request.model or self._settings.chat_model
        model = requested
        reason = "requested"

        advisory = await self.arbiter.thermal_advisory()
        if advisory.status in (ThermalStatus.HOT, ThermalStatus.CRITICAL) and requested not in profile.fallback_chain:
            model = profile.fallback_chain[0]
            reason = "thermal_downgrade"
            logger.warning(
                "thermal_downgrade",
                requested=requested,
                model=model,
                temperature_c=advisory.temperature_c,
            )
            self.audit.record(
                "telemetry",
                "thermal_downgrade",
                {"original": requested, "downgraded": model, "temp": advisory.temperature_c},
            )

        # A resident model already has its VRAM
        resident = {m.name for m in await self.adapter.list_loaded_models()}
        if self._settings.resolve_model(model) not in resident:
            recommendation = await self.arbiter.recommend_model(model)
            if recommendation.model is None:
                return None
            if recommendation.model != model:
                reason = recommendation.reason
            model = recommendation.model

        channel.emit(
            phase_event(
                "model_select",
                "complete",
                {
                    "model": model,
                    "requested": requested,
                    "reason": reason,
                    "thermal": advisory.status.value,
                },
            )
        )
        return model

    async def _context(self, request: ChatRequest) -> List[Message]:
        """Stored session turns followed by the earlier messages of this request."""
        context: List[Message] = []
        if request.session_id and self.sessions is not None:
            context.extend(
                await self.sessions.recent_turns(
                    request.session_id, self._settings.chat_context_turns
                )
            )
        for message in request.messages[:-1]:
            context.append({"role": message.role.value, "content": message.content})
        return context

    def _messages(self, request: ChatRequest, context: List[Message], extra: str = "") -> List[Message]:
        system = request.system_prompt or DEFAULT_SYSTEM_PROMPT
        last = request.messages[-1]
        user: Message = {"role": last.role.value, "content": last.content + extra}
        if last.images:
            user["images"] = last.images
        return [{"role": "system", "content": system}, *context, user]

    def _temperature(self, request: ChatRequest) -> float:
        if request.temperature is None:
            return self._settings.chat_default_temperature
        return request.temperature

    def _replay(self, channel: EventChannel, text: str) -> int:
        """Emit a finished text as token events. Returns the event count."""
        chunks = [text[i:i + REPLAY_CHUNK_CHARS] for i in range(0, len(text), REPLAY_CHUNK_CHARS)]
        for chunk in chunks:
            channel.emit(token_event(chunk))
        return len(chunks)

    def _use_synthesis(self, request: ChatRequest) -> int:
        """Candidate count to synthesize with, or 0 for a single completion."""
        if not request.synthesis:
            return 0
        candidates = self._settings.get_tier_policy(request.hints.tier)["candidates"]
        return candidates if candidates >= 2 else 0

    async def _synthesize(
        self,
        request: ChatRequest,
        channel: EventChannel,
        model: str,
        context: List[Message],
        candidates: int,
        prompt: str,
    ):
        config = SynthesisConfig.from_settings(
            self._settings,
            actor_model=self._settings.resolve_model(model),
            candidates=candidates,
        )
        engine = SynthesisEngine(self.adapter, config, audit=self._audit)
        return await engine.synthesize(
            prompt,
            context,
            request.system_prompt or DEFAULT_SYSTEM_PROMPT,
            channel,
        )

    async def _run_execute(
        self,
        request: ChatRequest,
        controller: RequestController,
        channel: EventChannel,
        model: str,
        context: List[Message],
        token: Optional[CancellationToken],
    ) -> Tuple[str, Dict[str, Any]]:
        candidates = self._use_synthesis(request)
        if candidates:
            result = await self._synthesize(
                request, channel, model, context, candidates, request.last_user_message
            )
            tokens = self._replay(channel, result.text)
            controller.dispatch(ControllerEvent.EXECUTE_COMPLETE, {"strategy": result.strategy.value})
            return result.text, {
                "tokens": tokens,
                "synthesis": True,
                "strategy": result.strategy.value,
                "merged": result.collapse.merged,
            }

        channel.emit(phase_event("generate", "active", {"model": model}))
        parts: List[str] = []
        async for piece in self.adapter.stream_complete(
            self._settings.resolve_model(model),
            self._messages(request, context),
            temperature=self._temperature(request),
            context_window=self._settings.chat_context_window,
            max_tokens=request.max_tokens,
        ):
            if token is not None:
                token.raise_if_cancelled()
            parts.append(piece)
            channel.emit(token_event(piece))
        channel.emit(phase_event("generate", "complete", {"tokens": len(parts)}))
        controller.dispatch(ControllerEvent.EXECUTE_COMPLETE)
        return "".join(parts), {"tokens": len(parts), "synthesis": False}

    async def _draft(
        self,
        request: ChatRequest,
        channel: EventChannel,
        model: str,
        context: List[Message],
        feedback: Optional[str] = None,
    ) -> str:
        extra = ""
        if feedback:
            extra = (
                f"\n\nA reviewer rejected the previous draft: {feedback}\n"
                "Produce a corrected, complete answer."
            )
        candidates = self._use_synthesis(request)
        if candidates:
            result = await self._synthesize(
                request, channel, model, context, candidates, request.last_user_message + extra
            )
            return result.text
        return await self.adapter.complete(
            self._settings.resolve_model(model),
            self._messages(request, context, extra),
            temperature=self._temperature(request),
            context_window=self._settings.chat_context_window,
            max_tokens=request.max_tokens,
        )

    async def judge_verify(self, prompt: str, draft: str) -> Tuple[bool, str]:
        """Ask the judge model for a PASS/FAIL verdict on a draft."""
        try:
            raw = await self.adapter.complete(
                self._settings.resolve_model(self._settings.judge_model),
                [
                    {"role": "system", "content": VERIFY_SYSTEM_PROMPT},
                    {"role": "user", "content": f"REQUEST:\n{prompt}\n\nDRAFT:\n{draft}"},
                ],
                temperature=0.1,
                context_window=self._settings.synthesis_judge_ctx,
                max_tokens=120,
            )
        except SidecarError as e:
            logger.warning("verifier_unavailable", error=str(e))
            return True, "verifier unavailable"
        answer = parse_answer(raw)
        return answer.status is CheckStatus.PASS, answer.reason

    async def _run_structured(
        self,
        request: ChatRequest,
        controller: RequestController,
        channel: EventChannel,
        model: str,
        context: List[Message],
        token: Optional[CancellationToken],
    ) -> Tuple[str, Dict[str, Any]]:
        prompt = request.last_user_message

        channel.emit(phase_event("plan", "active", {"model": model}))
        draft = await self._draft(request, channel, model, context)
        channel.emit(phase_event("plan", "complete"))
        controller.dispatch(ControllerEvent.PLAN_COMPLETE)

        while controller.state is RequestState.VERIFYING:
            if token is not None:
                token.raise_if_cancelled()
            attempt = controller.context.retry_count + 1
            channel.emit(phase_event("verify", "active", {"attempt": attempt}))
            passed, reason = await self.verifier(prompt, draft)
            channel.emit(
                phase_event("verify", "complete", {"attempt": attempt, "passed": passed, "reason": reason})
            )
            if passed:
                controller.dispatch(ControllerEvent.JUDGE_PASS)
                break
            controller.dispatch(ControllerEvent.JUDGE_FAIL, {"reason": reason})
            if controller.state is RequestState.REPLANNING:
                channel.emit(phase_event("replan", "active", {"reason": reason}))
                draft = await self._draft(request, channel, model, context, feedback=reason)
                channel.emit(phase_event("replan", "complete"))
                controller.dispatch(ControllerEvent.PLAN_COMPLETE)

        verified = controller.state is RequestState.SIMULATING
        simulated = False
        if verified:
            channel.emit(phase_event("simulate", "active"))
            simulated, sim_reason = await self.simulator(draft)
            channel.emit(
                phase_event("simulate", "complete", {"passed": simulated, "reason": sim_reason})
            )
            if simulated:
                controller.dispatch(ControllerEvent.SIM_PASS)
                channel.emit(phase_event("commit", "active"))
                tokens = self._replay(channel, draft)
                channel.emit(phase_event("commit", "complete"))
                controller.dispatch(ControllerEvent.COMMIT_COMPLETE)
            else:
                controller.dispatch(ControllerEvent.SIM_FAIL, {"error": sim_reason})
                tokens = self._replay(channel, draft)
        else:
            tokens = self._replay(channel, draft)

        return draft, {
            "tokens": tokens,
            "verified": verified,
            "simulated": simulated,
            "retries": controller.context.retry_count,
            "last_error": controller.context.last_error,
        }

    async def _report(
        self,
        request: ChatRequest,
        controller: RequestController,
        channel: EventChannel,
        model: str,
        text: str,
        fields: Dict[str, Any],
    ) -> None:
        request_id = controller.request_id
        if request.session_id and self.sessions is not None:
            await self.sessions.append_turns(
                request.session_id,
                [
                    {"role": "user", "content": request.last_user_message},
                    {"role": "assistant", "content": text},
                ],
            )

        elapsed_ms = controller.elapsed_ms()
        self.audit.record(
            AUDIT_COMPONENT,
            "complete",
            {
                "request_id": request_id,
                "model": model,
                "mode": controller.context.workload_mode.value,
                "elapsed_ms": elapsed_ms,
                **{k: v for k, v in fields.items() if k != "last_error"},
            },
        )
        logger.info("chat_complete", request_id=request_id, model=model, elapsed_ms=elapsed_ms)

        controller.dispatch(ControllerEvent.REPORT_COMPLETE)
        channel.finish(
            request_id=request_id,
            model=model,
            mode=controller.context.workload_mode.value,
            elapsed_ms=elapsed_ms,
            state=controller.state.value,
            **fields,
        )
