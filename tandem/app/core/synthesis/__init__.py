############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Quality synthesis package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Multi-candidate quality synthesis."""

from tandem.app.core.synthesis.engine import SynthesisEngine
from tandem.app.core.synthesis.models import (
    Candidate,
    CollapseResult,
    Critique,
    JudgeVerdict,
    Merge,
    Recommendation,
    SynthesisConfig,
    SynthesisResult,
    SynthesisStrategy,
    UseBest,
)

__all__ = [
    "Candidate",
    "CollapseResult",
    "Critique",
    "JudgeVerdict",
    "Merge",
    "Recommendation",
    "SynthesisConfig",
    "SynthesisEngine",
    "SynthesisResult",
    "SynthesisStrategy",
    "UseBest",
]
