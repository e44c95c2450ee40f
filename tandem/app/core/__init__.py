############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Core scheduling logic package
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Core scheduling logic for Tandem."""
