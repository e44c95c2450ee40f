############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# errors.py: Exceptions raised by the sidecar adapters
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Exceptions raised by the sidecar adapters."""

from typing import Optional


class SidecarError(Exception):
    """A sidecar call failed (transport error, timeout or bad status)."""

    def __init__(
        self,
        message: str,
        sidecar: str = "unknown",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.sidecar = sidecar
        self.status_code = status_code

    @property
    def is_timeout(self) -> bool:
        return self.status_code is None and "timeout" in str(self).lower()
