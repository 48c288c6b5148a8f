"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from maskprep.config import Settings
    from maskprep.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from maskprep.api.routes import router
from maskprep.config import get_settings
from maskprep.ml.classifier import ImageClassifier
from maskprep.ml.detector import MaskRCNNDetector
from maskprep.ml.inference import InferencePool
from maskprep.ml.model_manager import OnnxModelManager
from maskprep.ml.pipeline import InputPipeline

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the shared services. Invalid pyramid tables fail here, before any image."""
    pipeline = InputPipeline.from_settings(settings)
    model_manager = OnnxModelManager(settings)

    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.model_manager = model_manager
    app.state.detector = MaskRCNNDetector(model_manager, pipeline, model_name=settings.detector_model)
    app.state.classifier = ImageClassifier(model_manager, model_name=settings.classifier_model)
    app.state.inference_pool = InferencePool(settings)


async def evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    """Periodically drop sessions idle for longer than the model TTL."""
    while True:
        await asyncio.sleep(interval)
        model_manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting maskprep (device=%s, target=%sx%s, anchors=%s, normalization=%s, detector=%s)",
        settings.device,
        settings.target_width,
        settings.target_height,
        settings.anchor_mode,
        settings.normalization,
        settings.detector_model,
    )

    init_state(app, settings)

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(evict_idle_models(app.state.model_manager, settings.eviction_interval))

    logger.info("maskprep ready")
    yield

    logger.info("Shutting down maskprep")
    if eviction_task is not None:
        eviction_task.cancel()
        with suppress(asyncio.CancelledError):
            await eviction_task
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("maskprep shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="maskprep",
        description="Input tensors and anchor pyramids for Mask R-CNN style detectors",
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
