############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Storage package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Storage utilities for Tandem."""

from tandem.app.storage.artifacts import (
    RETENTION_PROFILES,
    Artifact,
    ArtifactStorage,
    RetentionPolicy,
    SweepResult,
)
from tandem.app.storage.sessions import GenerationRecord, SessionState, SessionStore, Turn

__all__ = [
    "Artifact",
    "ArtifactStorage",
    "GenerationRecord",
    "RETENTION_PROFILES",
    "RetentionPolicy",
    "SessionState",
    "SessionStore",
    "SweepResult",
    "Turn",
]
