############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Application package initialization
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Tandem Application Package."""

from tandem import __version__

__all__ = ["__version__"]
