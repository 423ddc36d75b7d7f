"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lookalike import __version__
from lookalike.api.routes import router
from lookalike.catalog import load_reference_collection
from lookalike.config import get_settings
from lookalike.errors import ImageDecodeError, InvalidInput, NoFaceDetected
from lookalike.matching import ReferenceStore
from lookalike.ml.embedding_service import FaceEmbeddingService
from lookalike.ml.inference import InferencePool
from lookalike.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


async def _evict_idle_models(model_manager: OnnxModelManager) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        model_manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load models and references on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings
    configure_logging()

    logger.info(
        "Starting Lookalike (device=%s, max_concurrent=%s, detection=%s, recognition=%s, threshold=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.face_recognition_model,
        settings.match_threshold,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    embedding_service = FaceEmbeddingService.from_settings(settings, model_manager)
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.embedding_service = embedding_service

    references = await inference_pool.run(load_reference_collection, settings, embedding_service)
    app.state.reference_store = ReferenceStore(references)

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(_evict_idle_models(model_manager))

    logger.info("Lookalike ready with %d references", len(references))
    yield

    logger.info("Shutting down Lookalike")
    if eviction_task is not None:
        eviction_task.cancel()
        with suppress(asyncio.CancelledError):
            await eviction_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("Lookalike shutdown complete")


async def _image_decode_error(request: Request, exc: Exception) -> JSONResponse:
    too_large = isinstance(exc, ImageDecodeError) and exc.too_large
    code = 413 if too_large else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def _invalid_input(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _no_face(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": "No face detected"})


async def _inference_busy(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Inference capacity exhausted, retry later"},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Lookalike",
        description="Find which reference face an uploaded photo looks most like",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(ImageDecodeError, _image_decode_error)
    application.add_exception_handler(InvalidInput, _invalid_input)
    application.add_exception_handler(NoFaceDetected, _no_face)
    application.add_exception_handler(TimeoutError, _inference_busy)

    application.include_router(router)
    return application


app = create_app()
