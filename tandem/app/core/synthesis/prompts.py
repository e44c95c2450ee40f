############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# prompts.py: Judge and merge prompts, judge response parsing
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Judge and merge prompts, and parsing of the judge's JSON verdict."""

import json
import re
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tandem.app.core.synthesis.models import (
    Candidate,
    Critique,
    JudgeVerdict,
    Merge,
    UseBest,
)
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

JUDGE_SYSTEM_PROMPT = """You are a judge evaluating multiple candidate solutions for the same task.
Score each candidate and identify what each does BEST.

OUTPUT FORMAT (respond with ONLY this JSON, no other text):
{
  "candidates": [
    {
      "index": 0,
      "score": 0.0-10.0,
      "strengths": ["what this candidate does best"],
      "weaknesses": ["what this candidate gets wrong"],
      "bestSection": "which part of this candidate is worth keeping"
    }
  ],
  "recommendation": "USE_BEST" | "MERGE",
  "mergeStrategy": "if MERGE, describe which parts from which candidates to combine"
}"""

MERGE_SYSTEM_PROMPT = (
    "You are performing a synthesis merge. Combine the best elements of "
    "multiple draft solutions into a single optimal output."
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def candidate_label(position: int) -> str:
    """A, B, C ... for the drafts shown to the judge and merger."""
    return chr(ord("A") + position)


def build_judge_content(prompt: str, candidates: Sequence[Candidate], char_budget: int) -> str:
    """User message for the judge: the request and each surviving candidate."""
    parts = [f"USER REQUEST:\n{prompt}\n"]
    for candidate in candidates:
        if candidate.errored:
            continue
        parts.append(
            f"=== CANDIDATE {candidate_label(candidate.index)} "
            f"(index={candidate.index}, temp={candidate.temperature}) ===\n"
            f"{candidate.text[:char_budget]}\n"
        )
    return "\n".join(parts)


def build_merge_prompt(
    prompt: str,
    candidates: Sequence[Candidate],
    verdict: JudgeVerdict,
) -> str:
    drafts = [c for c in candidates if not c.errored]
    lines = [
        "TASK: Write the optimal response to the following request.",
        "",
        "USER REQUEST:",
        prompt,
        "",
        f"You have {len(drafts)} drafts. None are individually perfect.",
        "Combine the best elements from each into a single, superior response.",
        "",
    ]
    for candidate in drafts:
        critique = verdict.critique_for(candidate.index)
        score = f"{critique.score:g}" if critique else "?"
        strengths = ", ".join(critique.strengths) if critique and critique.strengths else "unknown"
        weaknesses = ", ".join(critique.weaknesses) if critique and critique.weaknesses else "unknown"
        best_section = critique.best_section if critique and critique.best_section else "unknown"
        lines.extend(
            [
                f"=== DRAFT {candidate_label(candidate.index)} (Score: {score}/10) ===",
                f"Strengths: {strengths}",
                f"Weaknesses: {weaknesses}",
                f"Best section: {best_section}",
                "",
                candidate.text,
                "",
            ]
        )

    if isinstance(verdict.recommendation, Merge) and verdict.recommendation.strategy:
        lines.extend(["MERGE STRATEGY (from judge):", verdict.recommendation.strategy, ""])

    lines.extend(
        [
            "INSTRUCTIONS:",
            "- Combine the strongest elements from each draft",
            "- Fix weaknesses identified by the judge",
            "- Output ONLY the final merged response, no commentary about the drafts",
        ]
    )
    return "\n".join(lines)


class _JudgeCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    index: int
    score: float = 0.0
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    best_section: str = Field(default="", alias="bestSection")

    @field_validator("score")
    @classmethod
    def clamp_score(cls, v: float) -> float:
        return max(0.0, min(10.0, v))

    @field_validator("best_section", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or ""


class _JudgeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    candidates: List[_JudgeCandidate]
    recommendation: str = "USE_BEST"
    merge_strategy: Optional[str] = Field(default=None, alias="mergeStrategy")


def degenerate_verdict(candidates: Sequence[Candidate]) -> JudgeVerdict:
    """Neutral scores used when the judge is unusable: 5 per survivor, 0 per failure."""
    return JudgeVerdict(
        critiques=tuple(
            Critique(index=c.index, score=0.0 if c.errored else 5.0) for c in candidates
        ),
        recommendation=UseBest(),
        degenerate=True,
    )


def parse_verdict(raw: str, candidates: Sequence[Candidate]) -> JudgeVerdict:
    """Parse the judge's reply; any malformed reply yields the degenerate verdict."""
    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        logger.warning("judge_response_unparseable", reason="no_json_object")
        return degenerate_verdict(candidates)

    try:
        parsed = _JudgeResponse.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("judge_response_unparseable", reason=str(e)[:200])
        return degenerate_verdict(candidates)

    known = {c.index for c in candidates}
    critiques = tuple(
        Critique(
            index=c.index,
            score=c.score,
            strengths=tuple(c.strengths),
            weaknesses=tuple(c.weaknesses),
            best_section=c.best_section,
        )
        for c in parsed.candidates
        if c.index in known
    )
    if not critiques:
        logger.warning("judge_response_unparseable", reason="no_known_candidates")
        return degenerate_verdict(candidates)

    if parsed.recommendation.strip().upper() == "MERGE":
        recommendation = Merge(strategy=parsed.merge_strategy)
    else:
        recommendation = UseBest()
    return JudgeVerdict(critiques=critiques, recommendation=recommendation)
