"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from engagecam.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from engagecam.api.routes import pages, router
from engagecam.config import get_settings
from engagecam.ml.inference import InferencePool
from engagecam.ml.model_manager import ModelLoadError, OnnxModelManager
from engagecam.ml.webcam import Webcam
from engagecam.session import WebcamSession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings and the long-lived services to ``app.state``."""
    manager = OnnxModelManager(settings)
    webcam = Webcam(
        width=settings.webcam_width,
        height=settings.webcam_height,
        flip=settings.webcam_flip,
        device_index=settings.camera_index,
    )
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = manager
    app.state.webcam_session = WebcamSession(webcam, manager.require_active)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    logger.info(
        "Starting EngageCam (device=%s, max_concurrent=%s, pretrained=%s, tally_mode=%s)",
        settings.device,
        settings.max_concurrent,
        settings.pretrained_url,
        settings.tally_mode,
    )

    init_state(app, settings)

    if settings.load_on_startup:
        try:
            app.state.model_manager.load_pretrained()
        except ModelLoadError:
            logger.warning("Continuing without a model; upload one or retry /api/v1/model/pretrained")

    logger.info("EngageCam ready")
    yield

    logger.info("Shutting down EngageCam")
    session: WebcamSession = app.state.webcam_session
    if session.running:
        session.stop()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("EngageCam shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="EngageCam",
        description="Webcam image classification with a running per-class tally",
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
    application.include_router(pages)
    return application


app = create_app()
