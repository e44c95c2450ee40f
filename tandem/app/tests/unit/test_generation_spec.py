############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_generation_spec.py: Unit tests for GenerationSpec parsing and the fallback spec
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for GenerationSpec, fallback_spec and SpecBuilder."""

import json

import httpx
import pytest

from tandem.app.core.telemetry.adapters import OllamaAdapter
from tandem.app.core.telemetry.adapters.errors import SidecarError
from tandem.app.core.vision.intent import classify_intent
from tandem.app.core.vision.spec import (
    DEFAULT_NEGATIVE_PROMPT,
    BBox,
    GenerationSpec,
    SpecBuilder,
    SpecBuilt,
    SpecFallback,
    fallback_spec,
    minimal_spec,
    parse_spec,
)

SPEC_JSON = {
    "prompt": "a lighthouse on a cliff at dusk",
    "negative_prompt": "blurry",
    "dimensions": {"width": 1024, "height": 768},
    "regions": [{"id": "obj_1", "label": "lighthouse", "bbox": {"x": 0.4, "y": 0.1, "w": 0.2, "h": 0.6}}],
    "text_boxes": [
        {"id": "txt_1", "text": "Beacon", "bbox": {"x": 0.1, "y": 0.8, "w": 0.8, "h": 0.1}, "font_size": 48}
    ],
    "camera": {"angle": "low", "distance": "wide"},
    "lighting": {"direction": "left", "type": "golden hour", "mood": "calm"},
    "style": "oil painting",
}


class TestParseSpec:
    def test_plain_json(self):
        spec = parse_spec(json.dumps(SPEC_JSON))

        assert spec.prompt == "a lighthouse on a cliff at dusk"
        assert spec.dimensions.height == 768
        assert spec.regions[0].label == "lighthouse"
        assert spec.style == "oil painting"

    def test_fenced_json(self):
        spec = parse_spec("```json\n" + json.dumps(SPEC_JSON) + "\n```")
        assert spec.lighting.direction == "left"

    def test_alternate_field_names(self):
        spec = parse_spec(json.dumps({"diffusion_prompt": "a fox", "objects": [{"label": "fox"}]}))

        assert spec.prompt == "a fox"
        assert spec.regions[0].label == "fox"
        assert spec.negative_prompt == DEFAULT_NEGATIVE_PROMPT

    @pytest.mark.parametrize("raw", ["not json", "{}", '{"prompt": "   "}', "[1, 2]"])
    def test_invalid_raises_value_error(self, raw):
        with pytest.raises(ValueError):
            parse_spec(raw)

    def test_bbox_is_clamped(self):
        bbox = BBox(x=1.5, y=-0.2, w=0.5, h=2)
        assert (bbox.x, bbox.y, bbox.w, bbox.h) == (1.0, 0.0, 0.5, 1.0)

    def test_text_boxes_in_pixels(self):
        spec = GenerationSpec.model_validate(SPEC_JSON)

        box = spec.text_boxes_px()[0]

        assert box["x"] == round(0.1 * 1024)
        assert box["y"] == round(0.8 * 768)
        assert box["max_width"] == round(0.8 * 1024)
        assert box["font_size"] == 48

    def test_subjects(self):
        assert GenerationSpec.model_validate(SPEC_JSON).subjects() == "lighthouse"
        assert minimal_spec("a fox").subjects() == "a fox"


class TestFallbackSpec:
    """The fallback is built from the request alone."""

    def test_quoted_text_removed_from_prompt(self):
        spec = fallback_spec('a poster that says "Grand Opening" in gold', ["Grand Opening"])

        assert spec.prompt == "a poster that says in gold"
        assert spec.regions == []
        assert len(spec.text_boxes) == 1
        box = spec.text_boxes[0]
        assert box.text == "Grand Opening"
        assert box.font_size == 42
        assert box.bbox.y == pytest.approx(0.1)
        assert box.bbox.h == pytest.approx(0.15)

    def test_many_segments_stack_with_smaller_font(self):
        spec = fallback_spec('"One" "Two" "Three"', ["One", "Two", "Three"])

        assert [tb.font_size for tb in spec.text_boxes] == [28, 28, 28]
        ys = [tb.bbox.y for tb in spec.text_boxes]
        assert ys == sorted(ys)
        assert ys[1] - ys[0] == pytest.approx(0.8 / 3)

    def test_only_quoted_text_keeps_words(self):
        spec = fallback_spec('"Hello World"', ["Hello World"])
        assert spec.prompt == "Hello World"

    def test_defaults(self):
        spec = fallback_spec("a quiet harbor", [])

        assert spec.text_boxes == []
        assert spec.dimensions.width == 1024
        assert spec.style == "photorealistic"

    def test_minimal_spec_has_no_lighting_or_style(self):
        spec = minimal_spec("a fox", width=512, height=512)

        assert spec.lighting is None
        assert spec.style is None
        assert spec.dimensions.width == 512


class TestSpecBuilder:
    """Building never raises; failures come back as SpecFallback."""

    @pytest.mark.asyncio
    async def test_built(self, mock_ollama):
        mock_ollama.complete.return_value = json.dumps(SPEC_JSON)
        builder = SpecBuilder(mock_ollama, model="kuro-eye")

        result = await builder.build("a lighthouse", classify_intent("a lighthouse next to a boat on the left"))

        assert isinstance(result, SpecBuilt)
        assert result.spec.style == "oil painting"
        kwargs = mock_ollama.complete.call_args.kwargs
        assert kwargs["format"] == "json"
        assert mock_ollama.complete.call_args.args[0] == "kuro-eye"

    @pytest.mark.asyncio
    async def test_unparseable_reply_falls_back(self, mock_ollama):
        mock_ollama.complete.return_value = "Sure! Here is a scene..."
        builder = SpecBuilder(mock_ollama, model="kuro-eye")
        prompt = 'a sign that says "Open"'

        result = await builder.build(prompt, classify_intent(prompt))

        assert isinstance(result, SpecFallback)
        assert result.spec.text_boxes[0].text == "Open"
        assert result.error

    @pytest.mark.asyncio
    async def test_sidecar_error_falls_back(self, mock_ollama):
        mock_ollama.complete.side_effect = SidecarError("timeout", sidecar="ollama")
        builder = SpecBuilder(mock_ollama, model="kuro-eye")

        result = await builder.build("a lake", classify_intent("a lake"))

        assert isinstance(result, SpecFallback)
        assert result.spec.prompt == "a lake"

    @pytest.mark.asyncio
    async def test_edit_includes_previous_scene(self, mock_ollama):
        mock_ollama.complete.return_value = json.dumps(SPEC_JSON)
        builder = SpecBuilder(mock_ollama, model="kuro-eye")
        previous = GenerationSpec.model_validate(SPEC_JSON)
        prompt = "change the sky and make it brighter"

        await builder.build(prompt, classify_intent(prompt, session_has_image=True), previous)

        user_content = mock_ollama.complete.call_args.args[1][1]["content"]
        assert "EXISTING SCENE" in user_content
        assert "lighthouse" in user_content
        assert prompt in user_content


def _adapter_replying(body):
    adapter = OllamaAdapter("http://localhost:11434")
    adapter._client = httpx.AsyncClient(
        base_url=adapter.base_url,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
    )
    return adapter


class TestSpecBuilderMalformedReplies:
    """Structurally wrong 200 bodies from the text sidecar still yield a fallback."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], {"message": "x"}, {"message": {"content": "[1, 2]"}}])
    async def test_falls_back(self, body):
        builder = SpecBuilder(_adapter_replying(body), model="kuro-eye")
        prompt = 'a banner reading "Welcome" over a door'

        result = await builder.build(prompt, classify_intent(prompt))

        assert isinstance(result, SpecFallback)
        assert result.spec.text_boxes[0].text == "Welcome"
        assert "Welcome" not in result.spec.prompt

    @pytest.mark.asyncio
    async def test_unexpected_exception_falls_back(self, mock_ollama):
        mock_ollama.complete.side_effect = RuntimeError("connection pool closed")
        builder = SpecBuilder(mock_ollama, model="kuro-eye")

        result = await builder.build("a lake", classify_intent("a lake"))

        assert isinstance(result, SpecFallback)
        assert "connection pool closed" in result.error
