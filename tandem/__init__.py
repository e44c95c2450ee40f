############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Root package initialization and version definition
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Tandem - chat and image generation on one shared accelerator."""

__version__ = "0.3.0"
