############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# spec.py: GenerationSpec model and structured-output builder
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""GenerationSpec: the structured description an image is rendered from.

The spec is produced by a structured-output (JSON) call to the text
sidecar. Building never raises: any failure yields a deterministic
fallback spec, returned as ``SpecFallback`` so callers can tell.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from tandem.app.core.telemetry.adapters.ollama import OllamaAdapter
from tandem.app.core.vision.intent import IntentResult, Pipeline
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_NEGATIVE_PROMPT = "blurry, low quality, distorted, deformed"
DEFAULT_SIZE = 1024

SPEC_SYSTEM_PROMPT = """You are a scene composition planner for image generation.
Given a user's image request, output ONLY valid JSON (no markdown, no backticks, no explanation).

Output this exact schema:
{
  "prompt": "optimized prompt for the diffusion model, rich visual detail, no text instructions",
  "negative_prompt": "things to avoid",
  "dimensions": { "width": 1024, "height": 1024 },
  "regions": [
    {
      "id": "obj_1",
      "label": "description",
      "bbox": { "x": 0.1, "y": 0.2, "w": 0.3, "h": 0.4 },
      "z_order": 1
    }
  ],
  "text_boxes": [
    {
      "id": "txt_1",
      "text": "actual text to render",
      "bbox": { "x": 0.1, "y": 0.1, "w": 0.8, "h": 0.1 },
      "font_size": 48,
      "color": "#FFFFFF",
      "align": "center",
      "style": "bold"
    }
  ],
  "camera": { "angle": "eye-level", "distance": "medium" },
  "lighting": { "direction": "top-left", "type": "natural", "mood": "warm" },
  "style": "photorealistic"
}

bbox coordinates are normalized 0.0-1.0 relative to image dimensions.
text_boxes: include ALL text the user wants rendered. Estimate good positions.
If no text needed, return empty text_boxes array.
prompt: NEVER include text content, text is rendered separately."""

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.I)
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_QUOTED_SPAN = re.compile(r"[\"'`].*?[\"'`]")


def _unit(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


class BBox(BaseModel):
    """Normalized bounding box (0.0-1.0 of the image dimensions)."""

    x: float = 0.0
    y: float = 0.0
    w: float = 1.0
    h: float = 1.0

    @field_validator("x", "y", "w", "h")
    @classmethod
    def clamp(cls, v: float) -> float:
        return _unit(v)


class Region(BaseModel):
    id: str = ""
    label: str
    bbox: BBox = Field(default_factory=BBox)
    z_order: int = 0


class TextBox(BaseModel):
    id: str = ""
    text: str
    bbox: BBox = Field(default_factory=BBox)
    font_size: int = 32
    color: str = "#FFFFFF"
    align: str = "left"
    style: Optional[str] = None


class Dimensions(BaseModel):
    width: int = DEFAULT_SIZE
    height: int = DEFAULT_SIZE


class Camera(BaseModel):
    angle: str = "eye-level"
    distance: str = "medium"


class Lighting(BaseModel):
    direction: Optional[str] = "top-left"
    type: str = "natural"
    mood: str = "neutral"


class GenerationSpec(BaseModel):
    prompt: str = Field(validation_alias=AliasChoices("prompt", "diffusion_prompt"))
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    dimensions: Dimensions = Field(default_factory=Dimensions)
    regions: List[Region] = Field(
        default_factory=list, validation_alias=AliasChoices("regions", "objects")
    )
    text_boxes: List[TextBox] = Field(default_factory=list)
    camera: Camera = Field(default_factory=Camera)
    lighting: Optional[Lighting] = Field(default_factory=Lighting)
    style: Optional[str] = "photorealistic"

    @field_validator("prompt")
    @classmethod
    def prompt_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt is required")
        return v.strip()

    def text_boxes_px(self) -> List[Dict[str, Any]]:
        """Text boxes in pixel coordinates for the compositor."""
        width, height = self.dimensions.width, self.dimensions.height
        return [
            {
                "id": tb.id,
                "text": tb.text,
                "x": round(tb.bbox.x * width),
                "y": round(tb.bbox.y * height),
                "max_width": round(tb.bbox.w * width),
                "max_height": round(tb.bbox.h * height),
                "font_size": tb.font_size,
                "color": tb.color,
                "align": tb.align,
                "style": tb.style,
            }
            for tb in self.text_boxes
        ]

    def subjects(self) -> str:
        if self.regions:
            return ", ".join(r.label for r in self.regions)
        return self.prompt


@dataclass(frozen=True)
class SpecBuilt:
    spec: GenerationSpec


@dataclass(frozen=True)
class SpecFallback:
    spec: GenerationSpec
    error: str


SpecResult = Union[SpecBuilt, SpecFallback]


def strip_fences(raw: str) -> str:
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", raw.strip())).strip()


def parse_spec(raw: str) -> GenerationSpec:
    """Parse the sidecar's JSON reply. Raises ValueError (incl. ValidationError)."""
    return GenerationSpec.model_validate(json.loads(strip_fences(raw)))


def fallback_spec(prompt: str, text_segments: List[str]) -> GenerationSpec:
    """Deterministic spec built from the request alone.

    Quoted spans are removed from the render prompt; detected text
    segments become evenly stacked text boxes. No regions.
    """
    stripped = " ".join(_QUOTED_SPAN.sub("", prompt).split())
    if not stripped:
        stripped = " ".join(re.sub(r"[\"'`]", "", prompt).split())

    text_boxes = []
    if text_segments:
        y_step = 0.8 / len(text_segments)
        font_size = 28 if len(text_segments) > 2 else 42
        for i, text in enumerate(text_segments):
            text_boxes.append(
                TextBox(
                    id=f"txt_{i + 1}",
                    text=text,
                    bbox=BBox(x=0.1, y=0.1 + i * y_step, w=0.8, h=min(0.15, y_step - 0.02)),
                    font_size=font_size,
                    color="#FFFFFF",
                    align="center",
                    style="bold",
                )
            )

    return GenerationSpec(
        prompt=stripped,
        negative_prompt=DEFAULT_NEGATIVE_PROMPT,
        dimensions=Dimensions(),
        regions=[],
        text_boxes=text_boxes,
        camera=Camera(),
        lighting=Lighting(),
        style="photorealistic",
    )


def minimal_spec(prompt: str, width: int = DEFAULT_SIZE, height: int = DEFAULT_SIZE) -> GenerationSpec:
    """Spec for high-confidence simple requests; no lighting or style checks apply."""
    return GenerationSpec(
        prompt=prompt,
        dimensions=Dimensions(width=width, height=height),
        lighting=None,
        style=None,
    )


class SpecBuilder:
    """Builds GenerationSpecs through the text sidecar's JSON mode."""

    def __init__(self, adapter: OllamaAdapter, model: str, timeout: float = 30.0):
        self.adapter = adapter
        self.model = model
        self.timeout = timeout

    def _user_content(self, prompt: str, intent: IntentResult, previous: Optional[GenerationSpec]) -> str:
        if intent.pipeline is Pipeline.EDIT and previous is not None:
            return (
                f"EXISTING SCENE:\n{previous.model_dump_json(indent=2)}\n\n"
                f"USER EDIT REQUEST: {prompt}\n\n"
                "Update the scene to reflect the edit. Keep unchanged elements the same."
            )
        return prompt

    async def build(
        self,
        prompt: str,
        intent: IntentResult,
        previous: Optional[GenerationSpec] = None,
    ) -> SpecResult:
        """Build a spec. Never raises; failures return ``SpecFallback``."""
        try:
            raw = await self.adapter.complete(
                self.model,
                [
                    {"role": "system", "content": SPEC_SYSTEM_PROMPT},
                    {"role": "user", "content": self._user_content(prompt, intent, previous)},
                ],
                temperature=0.1,
                context_window=4096,
                max_tokens=800,
                format="json",
                timeout=self.timeout,
            )
            return SpecBuilt(parse_spec(raw))
        except Exception as e:
            logger.warning("generation_spec_fallback", error=str(e)[:200])
            return SpecFallback(spec=fallback_spec(prompt, intent.text_segments), error=str(e))
