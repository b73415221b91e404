"""
IOCSentry - FastAPI Application Entry Point

Main application module with logging infrastructure,
middleware configuration, and route mounting.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from iocsentry import __version__
from iocsentry.config import settings

# =============================================================================
# Logging Configuration
# =============================================================================


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structured logging with structlog.

    Args:
        level: Override for settings.log_level
        log_format: Override for settings.log_format ("json" or "console")
    """
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    if (log_format or settings.log_format) == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Configure logging on module load
configure_logging()

logger = structlog.get_logger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Opens the record store on startup and closes it on shutdown.
    """
    from iocsentry.lookup.orchestrator import get_orchestrator

    logger.info(
        "iocsentry_starting",
        version=__version__,
        host=settings.host,
        port=settings.port,
        debug=settings.debug,
    )

    orchestrator = get_orchestrator()
    logger.info(
        "api_keys_status",
        virustotal=settings.has_virustotal,
        keys=len(orchestrator.key_pool),
    )
    if not orchestrator.is_configured:
        logger.warning("virustotal_not_configured")

    yield

    orchestrator.store.close()
    logger.info("iocsentry_shutdown", stats=orchestrator.stats.to_dict())


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="IOCSentry",
    description="Threat indicator lookup service backed by VirusTotal",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# =============================================================================
# Middleware
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Health Check
# =============================================================================


@app.get("/health")
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns service status and configuration info.
    """
    return {
        "status": "healthy",
        "service": "iocsentry",
        "version": __version__,
        "api_keys": {
            "virustotal": settings.has_virustotal,
        },
    }


# =============================================================================
# API Routes
# =============================================================================

from iocsentry.api.routes import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api")


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "iocsentry.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
