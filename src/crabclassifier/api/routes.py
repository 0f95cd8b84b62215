"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from crabclassifier.api.dependencies import (
    get_app_settings,
    get_inference_pool,
    get_session,
    verify_api_key,
)
from crabclassifier.api.schemas import (
    ClassificationResponse,
    ErrorResponse,
    HealthResponse,
    ImageResponse,
    ModelStatusResponse,
)
from crabclassifier.ml.errors import (
    ClassificationError,
    ClassificationSupersededError,
    ImageNotFoundError,
    InvalidImageError,
    LoadInProgressError,
    NotReadyError,
    RetryExhaustedError,
)

if TYPE_CHECKING:
    from crabclassifier.ml.image_classifier import ClassificationResult
    from crabclassifier.session import ClassifierSession

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _model_status(session: ClassifierSession) -> ModelStatusResponse:
    loader = session.loader
    handle = loader.handle
    return ModelStatusResponse(
        state=loader.state.value,
        progress=loader.progress,
        error=loader.error_message or None,
        retry_count=loader.retry_count,
        retries_left=session.retry_policy.attempts_left(loader),
        can_retry=session.retry_policy.can_retry(loader),
        backend=handle.backend if handle else None,
        format=handle.format.value if handle else None,
    )


def _classification(result: ClassificationResult) -> ClassificationResponse:
    return ClassificationResponse(
        label=result.label.value,
        confidence=result.confidence,
        confidence_level=result.confidence_level,
        alternative_label=result.alternative_label.value,
        alternative_confidence=result.alternative_confidence,
    )


# -- Model ------------------------------------------------------------------


@router.get("/model", response_model=ModelStatusResponse, summary="Model load status")
async def model_status(request: Request) -> ModelStatusResponse:
    """Return load state, progress, last error, and whether a retry is offered."""
    return _model_status(get_session(request))


@router.post(
    "/model/load",
    response_model=ModelStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Start loading the model",
)
async def load_model(request: Request) -> ModelStatusResponse:
    session = get_session(request)
    try:
        session.start_load()
    except LoadInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _model_status(session)


@router.post(
    "/model/retry",
    response_model=ModelStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Retry a failed model load",
)
async def retry_model(request: Request) -> ModelStatusResponse:
    session = get_session(request)
    try:
        session.start_retry()
    except (LoadInProgressError, RetryExhaustedError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _model_status(session)


# -- Image ------------------------------------------------------------------


@router.post(
    "/image",
    response_model=ImageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
    summary="Upload the image to classify",
)
async def upload_image(request: Request, file: UploadFile) -> ImageResponse:
    """Store an image, replacing any previous one and clearing its result."""
    session = get_session(request)
    # One byte past the limit is enough for the size check to reject it.
    data = await file.read(get_app_settings(request).max_image_size + 1)
    try:
        image = session.upload_image(data, file.content_type)
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ImageResponse(ref=image.ref, content_type=image.content_type, size=image.size)


@router.get(
    "/image",
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Fetch the uploaded image",
)
async def get_image(request: Request) -> Response:
    try:
        data, content_type = get_session(request).image_bytes()
    except ImageNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(content=data, media_type=content_type)


@router.delete("/image", status_code=status.HTTP_204_NO_CONTENT, summary="Remove the uploaded image")
async def remove_image(request: Request) -> None:
    get_session(request).remove_image()


# -- Classification ---------------------------------------------------------


@router.post(
    "/classify",
    response_model=ClassificationResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
    summary="Classify the uploaded image",
)
async def classify(request: Request) -> ClassificationResponse:
    try:
        result = await get_session(request).classify()
    except (NotReadyError, ClassificationSupersededError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ClassificationError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return _classification(result)


@router.get(
    "/classify",
    response_model=ClassificationResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Latest classification result",
)
async def current_result(request: Request) -> ClassificationResponse:
    result = get_session(request).result
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No classification yet")
    return _classification(result)


@router.delete("/classify", status_code=status.HTTP_204_NO_CONTENT, summary="Clear the result")
async def reset_result(request: Request) -> None:
    get_session(request).reset()


# -- Service ----------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        loader_state=get_session(request).loader.state.value,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
