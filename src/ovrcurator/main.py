"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ovrcurator.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ovrcurator.api.routes import RunTracker, router
from ovrcurator.config import get_settings
from ovrcurator.runtime import build_runtime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load models on startup, release them on shutdown."""
    settings: Settings = app.state.settings

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    logger.info(
        "Starting OvR Curator (device=%s, max_concurrent=%s, models_dir=%s, dataset_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.models_dir,
        settings.dataset_dir,
    )

    runtime = build_runtime(settings)
    app.state.runtime = runtime
    app.state.run_tracker = RunTracker()

    logger.info("OvR Curator ready")
    yield

    logger.info("Shutting down OvR Curator")
    task = app.state.run_tracker.task
    if task is not None and not task.done():
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    await runtime.aclose()
    logger.info("OvR Curator shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``settings`` defaults to the environment and is used both here and by the
    lifespan when it builds the runtime.
    """
    settings = settings or get_settings()
    cors_origins = settings.cors_origins
    application = FastAPI(
        title="OvR Curator",
        description="Curates a labeled image dataset with an ensemble of one-vs-rest classifiers",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.state.settings = settings
    application.include_router(router)
    return application


app = create_app()
