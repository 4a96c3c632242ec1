"""
LLM Governor Service
====================
Logging setup and the FastAPI application entry point.
"""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from llm_governor import __version__
from llm_governor.api import api_router
from llm_governor.config import Settings, get_settings
from llm_governor.context import GovernorContext
from llm_governor.errors import (
    AuthenticationError,
    BackendError,
    BudgetExceededError,
    GovernorError,
    NetworkError,
    RateLimitError,
    UnsupportedBackendError,
)
from llm_governor.services.dispatcher import Dispatcher

logger = structlog.get_logger()

ERROR_STATUS_CODES: list[tuple[type[GovernorError], int]] = [
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (BudgetExceededError, status.HTTP_402_PAYMENT_REQUIRED),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (UnsupportedBackendError, status.HTTP_400_BAD_REQUEST),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
    (BackendError, status.HTTP_502_BAD_GATEWAY),
]


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def status_code_for(error: GovernorError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def governor_error_handler(request: Request, exc: GovernorError) -> JSONResponse:
    """Render governance errors with their mapped status code."""
    code = status_code_for(exc)
    logger.warning("Request failed", path=request.url.path, kind=exc.kind.value, status_code=code)
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "kind": exc.kind.value},
    )


def create_app(
    context: GovernorContext | None = None,
    dispatcher: Dispatcher | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        context: Governance components; built from settings when omitted
        dispatcher: Pre-built dispatcher; created on first use when omitted
    """
    context = context or GovernorContext.from_settings()
    settings = context.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        logger.info("Starting LLM Governor", version=__version__)
        await context.start()

        yield

        logger.info("Shutting down LLM Governor")
        if app.state.dispatcher is not None:
            await app.state.dispatcher.aclose()
        await context.aclose()

    app = FastAPI(
        title="LLM Governor API",
        description="Request governance for AI coding assistants",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(GovernorError, governor_error_handler)

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    app.include_router(api_router)
    return app


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "llm_governor.main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
