############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# intent.py: Image request intent classification
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Regex-based intent classification for image requests.

Pure computation, no I/O. Pipelines:
  simple  - direct render; skips evaluation when confidence is high
  spatial - layout matters, always builds a full GenerationSpec
  text    - text must be rendered; runs the compositor after the render
  edit    - modifies the session's previous image spec
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List

MAX_CONFIDENCE = 0.95
SKIP_FEEDBACK_CONFIDENCE = 0.8


class Pipeline(str, Enum):
    SIMPLE = "simple"
    SPATIAL = "spatial"
    TEXT = "text"
    EDIT = "edit"


TEXT_PATTERNS = [
    re.compile(r"\b(?:poster|menu|sign|banner|card|logo|infographic|flyer|invitation)\b", re.I),
    re.compile(r"\b(?:typography|typeface|font|lettering|headline|tagline)\b", re.I),
    re.compile(r"\b(?:ui|interface|dashboard|mockup|wireframe|layout)\b", re.I),
    re.compile(r"\b(?:text|words?|says?|reads?|written|label|title|caption|subtitle)\b", re.I),
    re.compile(r"[\"'`].{2,}[\"'`]"),
    re.compile(r"\bthat\s+(?:says|reads)\b", re.I),
]

SPATIAL_PATTERNS = [
    re.compile(r"\b(?:left|right|top|bottom|center|middle|foreground|background)\b", re.I),
    re.compile(r"\b(?:next\s+to|behind|in\s+front|above|below|between|beside)\b", re.I),
    re.compile(r"\b(?:arrange|layout|composition|scene|multiple\s+(?:objects?|items?|people))\b", re.I),
    re.compile(r"\b(?:grid|row|column|stack|overlap|layer)\b", re.I),
    re.compile(r"\b\d+\s+(?:objects?|items?|people|characters?|elements?)\b", re.I),
]

EDIT_PATTERNS = [
    re.compile(r"\b(?:change|move|adjust|modify|edit|update|replace|swap|shift)\b", re.I),
    re.compile(r"\b(?:make\s+(?:it|the|this)|increase|decrease|bigger|smaller)\b", re.I),
    re.compile(r"\b(?:more|less|add|remove|delete)\s+\w+", re.I),
    re.compile(r"\b(?:same\s+(?:image|picture)|keep|maintain)\b", re.I),
]

QUOTED_SEGMENT = re.compile(r"[\"'`]([^\"'`]{2,})[\"'`]")
SAYS_SEGMENT = re.compile(r"(?:says?|reads?|reading|written)\s+[\"'`]?([^\"'`.,]+)[\"'`]?", re.I)


@dataclass(frozen=True)
class IntentResult:
    pipeline: Pipeline
    confidence: float
    reason: str
    text_segments: List[str] = field(default_factory=list)
    scores: Dict[str, int] = field(default_factory=dict)
    skip_feedback_loop: bool = False

    def to_dict(self) -> Dict:
        return {
            "pipeline": self.pipeline.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "text_segments": list(self.text_segments),
            "scores": dict(self.scores),
            "skip_feedback_loop": self.skip_feedback_loop,
        }


def _score(patterns: List["re.Pattern[str]"], text: str) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))


def extract_text_segments(prompt: str) -> List[str]:
    """Quoted segments plus "says X" / "reads X" phrases, in order, deduplicated."""
    segments = [m.group(1) for m in QUOTED_SEGMENT.finditer(prompt)]
    for match in SAYS_SEGMENT.finditer(prompt):
        if match.group(1) not in segments:
            segments.append(match.group(1))
    return segments


def classify_intent(prompt: str, session_has_image: bool = False) -> IntentResult:
    """Classify an image request into a pipeline with a confidence score."""
    text = prompt.strip()

    text_score = _score(TEXT_PATTERNS, text)
    spatial_score = _score(SPATIAL_PATTERNS, text)
    edit_score = _score(EDIT_PATTERNS, text)
    segments = extract_text_segments(text)

    if session_has_image and edit_score >= 2:
        pipeline = Pipeline.EDIT
        confidence = 0.6 + edit_score * 0.1
        reason = f"Edit intent detected ({edit_score} edit signals)"
    elif text_score >= 2 or segments:
        pipeline = Pipeline.TEXT
        confidence = 0.7 + text_score * 0.08
        reason = (
            f"Text rendering required ({text_score} text signals, "
            f"{len(segments)} text segments)"
        )
    elif spatial_score >= 2:
        pipeline = Pipeline.SPATIAL
        confidence = 0.6 + spatial_score * 0.1
        reason = f"Spatial complexity detected ({spatial_score} spatial signals)"
    else:
        pipeline = Pipeline.SIMPLE
        word_count = len(text.split())
        if word_count <= 15:
            confidence = 0.85
        elif word_count <= 30:
            confidence = 0.7
        else:
            confidence = 0.55
        reason = f"Simple generation ({word_count} words, confidence {confidence:.2f})"

    return IntentResult(
        pipeline=pipeline,
        confidence=min(confidence, MAX_CONFIDENCE),
        reason=reason,
        text_segments=segments,
        scores={"text": text_score, "spatial": spatial_score, "edit": edit_score},
        skip_feedback_loop=pipeline is Pipeline.SIMPLE and confidence >= SKIP_FEEDBACK_CONFIDENCE,
    )
