############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# main.py: FastAPI application entry point
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tandem.app.api import api_router
from tandem.app.api.sse import make_request_id
from tandem.app.logging_config import get_logger, request_log_context, setup_logging
from tandem.app.services.registry import init_services, shutdown_services
from tandem.app.settings import get_settings

setup_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = b"x-request-id"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    settings = get_settings()
    logger.info(
        "tandem_starting",
        version=settings.app_version,
        accelerator_profile=settings.accelerator_profile,
        text_sidecar=settings.text_sidecar_url,
        diffusion_sidecar=settings.diffusion_sidecar_url,
        gpu_agent=settings.gpu_agent_url,
    )
    await init_services(settings)
    yield
    await shutdown_services()
    logger.info("tandem_stopped")


class RequestContextMiddleware:
    """Raw ASGI middleware tagging each HTTP exchange with a request id.

    A caller-supplied X-Request-ID is kept; otherwise one is generated.
    Streaming routes set their own header with the id their controller
    uses, so the header is only added when the response lacks one.
    Client disconnects reach streaming handlers as ``http.disconnect``
    messages.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        supplied = dict(scope.get("headers", [])).get(REQUEST_ID_HEADER, b"").decode()
        request_id = make_request_id(supplied, "req")

        async def send_with_id(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                if all(k.lower() != REQUEST_ID_HEADER for k, _ in headers):
                    headers.append((REQUEST_ID_HEADER, request_id.encode()))
                    message = {**message, "headers": headers}
            await send(message)

        with request_log_context(http_request_id=request_id, path=scope.get("path", "")):
            await self.app(scope, receive, send_with_id)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Inference scheduler for text and diffusion sidecars sharing one accelerator",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("unhandled_exception", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "server_error"}},
        )

    app.include_router(api_router)
    return app


app = create_app()


def main():
    """Serve the app with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tandem.app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
