"""API route definitions."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse

from lookalike.api.middleware import verify_api_key
from lookalike.api.schemas import (
    EmbeddingResponse,
    ErrorResponse,
    HealthResponse,
    MatchEmbeddingRequest,
    MatchResponse,
    ModelInfo,
    ModelsResponse,
    ReferenceInfo,
    ReferencesResponse,
)
from lookalike.catalog import refresh_references
from lookalike.errors import NoFaceDetected
from lookalike.matching import Match, match
from lookalike.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

    from lookalike.config import Settings
    from lookalike.matching import ReferenceCollection, ReferenceStore
    from lookalike.ml.embedding_service import FaceEmbeddingService
    from lookalike.ml.inference import InferencePool
    from lookalike.ml.model_manager import OnnxModelManager

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_IMAGE_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_reference_store(request: Request) -> ReferenceStore:
    store: ReferenceStore = request.app.state.reference_store
    return store


def _get_embedding_service(request: Request) -> FaceEmbeddingService:
    service: FaceEmbeddingService = request.app.state.embedding_service
    return service


def _match_response(query: ArrayLike, references: ReferenceCollection, threshold: float) -> MatchResponse:
    result = match(query, references, threshold)
    if isinstance(result, Match):
        record = result.record
        return MatchResponse(
            matched=True,
            name=record.name,
            image=record.image,
            index=next(i for i, r in enumerate(references) if r is record),
            distance=result.distance,
            threshold=threshold,
        )
    return MatchResponse(matched=False, threshold=threshold, reason=result.reason)


def _references_response(references: ReferenceCollection) -> ReferencesResponse:
    return ReferencesResponse(
        count=len(references),
        dim=references.dim,
        references=[ReferenceInfo(index=i, name=r.name, image=r.image) for i, r in enumerate(references)],
    )


@router.post(
    "/match",
    response_model=MatchResponse,
    responses=_IMAGE_ERRORS,
    summary="Find the reference face closest to an uploaded photo",
)
async def match_image(
    request: Request,
    file: UploadFile,
    threshold: Annotated[float | None, Query(ge=0.0, allow_inf_nan=False)] = None,
) -> MatchResponse:
    """Embed the most prominent face in the upload and compare it to the reference set.

    A photo without a face is reported as ``matched: false`` with reason ``no_face``.
    """
    settings = _get_settings(request)
    limit = settings.match_threshold if threshold is None else threshold
    # Snapshot before inference so a concurrent reload cannot change the set mid-request.
    references = _get_reference_store(request).current
    service = _get_embedding_service(request)

    data = await file.read()
    try:
        embedding = await _get_inference_pool(request).run(service.detect_embedding, data)
    except NoFaceDetected:
        return MatchResponse(matched=False, threshold=limit, reason="no_face")
    return _match_response(embedding, references, limit)


@router.post(
    "/match-embedding",
    response_model=MatchResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Match a precomputed face embedding",
)
async def match_embedding(request: Request, body: MatchEmbeddingRequest) -> MatchResponse:
    """Compare a client-computed embedding against the reference set."""
    settings = _get_settings(request)
    limit = settings.match_threshold if body.threshold is None else body.threshold
    return _match_response(body.embedding, _get_reference_store(request).current, limit)


@router.post(
    "/embed",
    response_model=EmbeddingResponse,
    responses={**_IMAGE_ERRORS, 422: {"model": ErrorResponse}},
    summary="Detect the most prominent face and return its embedding",
)
async def embed_face(request: Request, file: UploadFile) -> EmbeddingResponse:
    service = _get_embedding_service(request)
    data = await file.read()
    face = await _get_inference_pool(request).run(service.embed_primary_face, data)
    return EmbeddingResponse(
        x=face.x,
        y=face.y,
        width=face.width,
        height=face.height,
        score=face.score,
        dim=int(face.embedding.shape[0]),
        vector=face.embedding.tolist(),
    )


@router.get(
    "/references",
    response_model=ReferencesResponse,
    summary="List the reference set",
)
async def list_references(request: Request) -> ReferencesResponse:
    return _references_response(_get_reference_store(request).current)


@router.get(
    "/references/{index}/image",
    response_class=FileResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Download a reference image",
)
async def reference_image(request: Request, index: int) -> FileResponse:
    references = _get_reference_store(request).current
    if not 0 <= index < len(references):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No reference at index {index}")
    path = Path(references[index].image)
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reference image is not available")
    return FileResponse(path)


@router.post(
    "/references/reload",
    response_model=ReferencesResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Reload the reference set (precomputed file if present, else the image directory)",
)
async def reload_references(request: Request) -> ReferencesResponse:
    """Rebuild the reference set; matches keep using the old set until the new one is complete."""
    settings = _get_settings(request)
    store = _get_reference_store(request)
    service = _get_embedding_service(request)
    collection = await _get_inference_pool(request).run(refresh_references, settings, store, service)
    return _references_response(collection)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    model_manager: OnnxModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=model_manager.get_loaded_models(),
        references_loaded=len(_get_reference_store(request).current),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the registered models and their status under the current configuration."""
    settings = _get_settings(request)
    active_models = {settings.face_detection_model, settings.face_recognition_model}

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in active_models:
            model_status = "active"
        elif spec.insightface and not settings.accept_insightface_license:
            model_status = "requires_license"
        else:
            model_status = "available"
        models.append(ModelInfo(name=spec.name, task=spec.task, status=model_status, license=spec.license))

    return ModelsResponse(models=models)
