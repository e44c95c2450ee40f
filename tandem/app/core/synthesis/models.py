############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# models.py: Synthesis data models
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Synthesis data models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from tandem.app.settings import Settings


class SynthesisStrategy(str, Enum):
    """How the final text was produced."""

    USE_BEST = "USE_BEST"
    MERGE = "MERGE"
    SINGLE = "SINGLE"
    SINGLE_VALID = "SINGLE_VALID"
    FALLBACK = "FALLBACK"


@dataclass
class Candidate:
    index: int
    text: str
    temperature: float
    seed: Optional[int] = None
    errored: bool = False


@dataclass(frozen=True)
class Critique:
    index: int
    score: float
    strengths: Tuple[str, ...] = ()
    weaknesses: Tuple[str, ...] = ()
    best_section: str = ""


@dataclass(frozen=True)
class UseBest:
    """Judge recommends shipping the top candidate as-is."""


@dataclass(frozen=True)
class Merge:
    """Judge recommends merging; ``strategy`` says which parts to combine."""

    strategy: Optional[str] = None


Recommendation = Union[UseBest, Merge]


@dataclass(frozen=True)
class JudgeVerdict:
    critiques: Tuple[Critique, ...]
    recommendation: Recommendation = UseBest()
    degenerate: bool = False

    def critique_for(self, index: int) -> Optional[Critique]:
        for critique in self.critiques:
            if critique.index == index:
                return critique
        return None

    @property
    def recommendation_name(self) -> str:
        return "MERGE" if isinstance(self.recommendation, Merge) else "USE_BEST"


@dataclass
class CollapseResult:
    strategy: SynthesisStrategy
    text: str
    merged: bool = False
    best_index: Optional[int] = None
    best_score: Optional[float] = None
    scores: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SynthesisResult:
    """Outcome of one ``synthesize`` call."""

    collapse: CollapseResult
    candidates: List[Candidate]
    verdict: Optional[JudgeVerdict]
    elapsed_ms: int

    @property
    def text(self) -> str:
        return self.collapse.text

    @property
    def strategy(self) -> SynthesisStrategy:
        return self.collapse.strategy


@dataclass
class SynthesisConfig:
    candidates: int = 3
    temperatures: Tuple[float, ...] = (0.7, 0.3, 0.5)
    pass_threshold: float = 8.5
    actor_model: str = "kuro-forge"
    judge_model: str = "kuro-logic"
    merge_model: Optional[str] = None
    actor_ctx: int = 32768
    judge_ctx: int = 16384
    merge_ctx: int = 32768
    candidate_char_budget: int = 6000
    judge_temperature: float = 0.1
    merge_temperature: float = 0.2

    def temperature_for(self, index: int) -> float:
        return self.temperatures[index % len(self.temperatures)]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        actor_model: Optional[str] = None,
        candidates: Optional[int] = None,
    ) -> "SynthesisConfig":
        return cls(
            candidates=candidates if candidates is not None else settings.synthesis_candidates,
            temperatures=tuple(settings.synthesis_temperatures) or (0.7, 0.3, 0.5),
            pass_threshold=settings.synthesis_pass_threshold,
            actor_model=actor_model or settings.chat_model,
            judge_model=settings.judge_model,
            merge_model=settings.merge_model,
            actor_ctx=settings.synthesis_actor_ctx,
            judge_ctx=settings.synthesis_judge_ctx,
            merge_ctx=settings.synthesis_merge_ctx,
            candidate_char_budget=settings.synthesis_candidate_char_budget,
        )
