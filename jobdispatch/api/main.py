"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobdispatch import __version__
from jobdispatch.api.routes import failed_router, health_router, jobs_router
from jobdispatch.client import Dispatcher, load_jobs_module
from jobdispatch.config import get_settings
from jobdispatch.observability.logging import setup_logging
from jobdispatch.observability.metrics import setup_metrics
from jobdispatch.observability.tracing import instrument_fastapi, setup_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Creates and connects the dispatcher on startup unless one was supplied
    to create_app, and closes it on shutdown. The API only publishes and
    inspects queues; it never runs workers or the periodic scheduler.
    """
    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()

    owns_dispatcher = getattr(app.state, "dispatcher", None) is None
    if owns_dispatcher:
        settings = get_settings()
        app.state.dispatcher = Dispatcher(settings=settings)
        load_jobs_module(app.state.dispatcher, settings.jobs_module)
    await app.state.dispatcher.connect()

    logger.info("Application started")

    yield

    # Shutdown
    if owns_dispatcher:
        await app.state.dispatcher.stop()
    logger.info("Application shutdown")


def create_app(dispatcher: Dispatcher | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        dispatcher: Dispatcher to serve. Created at startup when omitted.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Dispatcher Admin API",
        description="Publish jobs, inspect queue depths and manage the failed queue",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.dispatcher = dispatcher

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(failed_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the admin API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
