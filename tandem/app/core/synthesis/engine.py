############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# engine.py: Multi-candidate generation, judging and collapse
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Synthesis engine.

Trades accelerator time for output quality: K candidates at varied
temperature, one judge call scoring all of them, then either the clear
winner ships verbatim or one merge call combines the drafts. The K
requests are issued concurrently but serialize on the accelerator.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.events import EventChannel, phase_event
from tandem.app.core.synthesis.models import (
    Candidate,
    CollapseResult,
    JudgeVerdict,
    SynthesisConfig,
    SynthesisResult,
    SynthesisStrategy,
)
from tandem.app.core.synthesis.prompts import (
    JUDGE_SYSTEM_PROMPT,
    MERGE_SYSTEM_PROMPT,
    build_judge_content,
    build_merge_prompt,
    degenerate_verdict,
    parse_verdict,
)
from tandem.app.core.telemetry import metrics
from tandem.app.core.telemetry.adapters.ollama import OllamaAdapter
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

AUDIT_COMPONENT = "synthesis"
ALL_FAILED_TEXT = "[All candidates failed]"

Message = Dict[str, Any]


class SynthesisEngine:
    """Generate, critique and collapse candidate completions."""

    def __init__(
        self,
        adapter: OllamaAdapter,
        config: Optional[SynthesisConfig] = None,
        audit: Optional[AuditSink] = None,
        seed_clock: Callable[[], float] = time.time,
    ):
        self.adapter = adapter
        self.config = config or SynthesisConfig()
        self._audit = audit
        self._seed_clock = seed_clock

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    def _emit(
        self,
        channel: Optional[EventChannel],
        phase: str,
        status: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record(AUDIT_COMPONENT, f"{phase}:{status}", data or {})
        if channel is not None:
            channel.emit(phase_event(phase, status, data))

    async def _generate_one(
        self,
        index: int,
        messages: List[Message],
        seed: int,
    ) -> Candidate:
        temperature = self.config.temperature_for(index)
        try:
            text = await self.adapter.complete(
                self.config.actor_model,
                messages,
                temperature=temperature,
                seed=seed,
                context_window=self.config.actor_ctx,
            )
        except Exception as e:
            logger.warning("synthesis_candidate_failed", index=index, error=str(e))
            return Candidate(
                index=index,
                text=f"[ERROR: {e}]",
                temperature=temperature,
                seed=seed,
                errored=True,
            )
        return Candidate(index=index, text=text, temperature=temperature, seed=seed)

    async def generate_candidates(
        self,
        prompt: str,
        context: Sequence[Message] = (),
        actor_system: str = "",
    ) -> List[Candidate]:
        """Fan out K completions with distinct temperatures and seeds."""
        messages: List[Message] = []
        if actor_system:
            messages.append({"role": "system", "content": actor_system})
        messages.extend(context)
        messages.append({"role": "user", "content": prompt})

        base_seed = int(self._seed_clock() * 1000)
        return list(
            await asyncio.gather(
                *(
                    self._generate_one(i, messages, base_seed + i * 1000)
                    for i in range(self.config.candidates)
                )
            )
        )

    async def critique(self, prompt: str, candidates: Sequence[Candidate]) -> JudgeVerdict:
        """One judge call over all surviving candidates."""
        content = build_judge_content(prompt, candidates, self.config.candidate_char_budget)
        try:
            raw = await self.adapter.complete(
                self.config.judge_model,
                [
                    {"role": "system", "content": JUDGE_SYSTEM_PROMPT},
                    {"role": "user", "content": content},
                ],
                temperature=self.config.judge_temperature,
                context_window=self.config.judge_ctx,
            )
        except Exception as e:
            logger.warning("synthesis_judge_failed", error=str(e))
            return degenerate_verdict(candidates)
        return parse_verdict(raw, candidates)

    async def collapse(
        self,
        prompt: str,
        candidates: Sequence[Candidate],
        verdict: JudgeVerdict,
    ) -> CollapseResult:
        by_index = {c.index: c for c in candidates}
        valid = [
            c for c in verdict.critiques
            if c.score > 0 and c.index in by_index and not by_index[c.index].errored
        ]

        if not valid:
            fallback = next((c for c in candidates if not c.errored), None)
            if fallback is None and candidates:
                fallback = candidates[0]
            return CollapseResult(
                strategy=SynthesisStrategy.FALLBACK,
                text=fallback.text if fallback else ALL_FAILED_TEXT,
            )

        ranked = sorted(valid, key=lambda c: c.score, reverse=True)
        best = ranked[0]
        scores = [{"index": c.index, "score": c.score} for c in ranked]

        if best.score >= self.config.pass_threshold:
            return CollapseResult(
                strategy=SynthesisStrategy.USE_BEST,
                text=by_index[best.index].text,
                best_index=best.index,
                best_score=best.score,
                scores=scores,
            )

        if len(ranked) >= 2:
            merge_prompt = build_merge_prompt(prompt, candidates, verdict)
            model = self.config.merge_model or self.config.actor_model
            try:
                merged = await self.adapter.complete(
                    model,
                    [
                        {"role": "system", "content": MERGE_SYSTEM_PROMPT},
                        {"role": "user", "content": merge_prompt},
                    ],
                    temperature=self.config.merge_temperature,
                    context_window=self.config.merge_ctx,
                )
            except Exception as e:
                logger.warning("synthesis_merge_failed", error=str(e))
                return CollapseResult(
                    strategy=SynthesisStrategy.FALLBACK,
                    text=by_index[best.index].text,
                    best_index=best.index,
                    best_score=best.score,
                    scores=scores,
                )
            return CollapseResult(
                strategy=SynthesisStrategy.MERGE,
                text=merged,
                merged=True,
                best_index=best.index,
                best_score=best.score,
                scores=scores,
            )

        return CollapseResult(
            strategy=SynthesisStrategy.SINGLE,
            text=by_index[best.index].text,
            best_index=best.index,
            best_score=best.score,
            scores=scores,
        )

    async def synthesize(
        self,
        prompt: str,
        context: Sequence[Message] = (),
        actor_system: str = "",
        channel: Optional[EventChannel] = None,
    ) -> SynthesisResult:
        """
        Run generate, critique and collapse.

        Phase events report counts, scores and the chosen strategy only;
        candidate text never leaves the engine except as the final result.
        """
        started = time.monotonic()
        cfg = self.config

        self._emit(
            channel,
            "synthesis_generate",
            "active",
            {"candidates": cfg.candidates, "temperatures": list(cfg.temperatures)},
        )
        candidates = await self.generate_candidates(prompt, context, actor_system)
        survivors = [c for c in candidates if not c.errored]
        self._emit(
            channel,
            "synthesis_generate",
            "complete",
            {"generated": len(survivors), "errors": len(candidates) - len(survivors)},
        )

        verdict: Optional[JudgeVerdict] = None
        if len(survivors) == 1:
            self._emit(channel, "synthesis_critique", "skipped", {"reason": "single_survivor"})
            result = CollapseResult(
                strategy=SynthesisStrategy.SINGLE_VALID,
                text=survivors[0].text,
                best_index=survivors[0].index,
            )
        elif not survivors:
            self._emit(channel, "synthesis_critique", "skipped", {"reason": "no_survivors"})
            result = await self.collapse(prompt, candidates, degenerate_verdict(candidates))
        else:
            self._emit(
                channel,
                "synthesis_critique",
                "active",
                {"judge": cfg.judge_model, "candidates": len(survivors)},
            )
            verdict = await self.critique(prompt, candidates)
            self._emit(
                channel,
                "synthesis_critique",
                "complete",
                {
                    "scores": [c.score for c in verdict.critiques],
                    "recommendation": verdict.recommendation_name,
                    "degenerate": verdict.degenerate,
                },
            )
            self._emit(
                channel,
                "synthesis_collapse",
                "active",
                {"recommendation": verdict.recommendation_name},
            )
            result = await self.collapse(prompt, candidates, verdict)

        self._emit(
            channel,
            "synthesis_collapse",
            "complete",
            {
                "strategy": result.strategy.value,
                "merged": result.merged,
                "best_score": result.best_score,
            },
        )
        metrics.SYNTHESIS_OUTCOMES.labels(strategy=result.strategy.value).inc()
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "synthesis_complete",
            strategy=result.strategy.value,
            survivors=len(survivors),
            elapsed_ms=elapsed_ms,
        )
        return SynthesisResult(
            collapse=result,
            candidates=candidates,
            verdict=verdict,
            elapsed_ms=elapsed_ms,
        )
