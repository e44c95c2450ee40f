############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# __init__.py: Request services
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Request services for Tandem."""

from tandem.app.services.chat import ChatService
from tandem.app.services.registry import (
    ServiceRegistry,
    build_services,
    get_services,
    init_services,
    shutdown_services,
)
from tandem.app.services.vision import VisionService

__all__ = [
    "ChatService",
    "ServiceRegistry",
    "VisionService",
    "build_services",
    "get_services",
    "init_services",
    "shutdown_services",
]
