############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Image generation pipeline package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Image generation with automated evaluation and bounded rerender."""

from tandem.app.core.vision.evaluator import (
    CheckResult,
    CheckStatus,
    EvaluationReport,
    ImageEvaluator,
)
from tandem.app.core.vision.intent import IntentResult, Pipeline, classify_intent
from tandem.app.core.vision.pipeline import (
    MAX_RENDER_ATTEMPTS,
    GenerationPipeline,
    PipelineResult,
    VisionJob,
)
from tandem.app.core.vision.spec import (
    GenerationSpec,
    SpecBuilder,
    SpecBuilt,
    SpecFallback,
    SpecResult,
    fallback_spec,
)

__all__ = [
    "CheckResult",
    "CheckStatus",
    "EvaluationReport",
    "GenerationPipeline",
    "GenerationSpec",
    "ImageEvaluator",
    "IntentResult",
    "MAX_RENDER_ATTEMPTS",
    "Pipeline",
    "PipelineResult",
    "SpecBuilder",
    "SpecBuilt",
    "SpecFallback",
    "SpecResult",
    "VisionJob",
    "classify_intent",
    "fallback_spec",
]
