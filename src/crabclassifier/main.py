"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from crabclassifier.ml.runtime import ModelRuntime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from crabclassifier.api.routes import router
from crabclassifier.config import Settings, get_settings
from crabclassifier.ml.inference import InferencePool
from crabclassifier.ml.runtime import OnnxRuntimeBackend
from crabclassifier.session import ClassifierSession

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings, runtime: ModelRuntime | None = None) -> None:
    """Attach settings, the runtime pool, and the classifier session to ``app.state``."""
    inference_pool = InferencePool(settings)
    runtime = runtime or OnnxRuntimeBackend(settings)
    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.session = ClassifierSession(settings, runtime, inference_pool)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting crab classifier (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_repo,
    )

    init_app_state(app, settings)
    session: ClassifierSession = app.state.session
    if settings.autoload:
        session.start_load()

    logger.info("Crab classifier ready")
    yield

    logger.info("Shutting down crab classifier")
    await session.shutdown()
    app.state.inference_pool.shutdown()
    logger.info("Crab classifier shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Crab Classifier",
        description="Crab gender classification with a retrying model loader",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("crabclassifier.main:app", host=settings.host, port=settings.port)
