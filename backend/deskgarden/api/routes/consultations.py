"""Consultation API endpoints.

Thin wrappers over the pipeline: request validation here, everything
else (retries, repair, product matching) in activities/consultation.py.
Pipeline failures surface as ConsultationFailed / AfterImageGenerationError
and are mapped to ErrorResponse by the handlers in main.py.
"""

from functools import lru_cache

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from deskgarden.activities.consultation import (
    ConsultationPipeline,
    build_after_image_prompt,
    build_pipeline,
)
from deskgarden.models.contracts import (
    AfterImageRequest,
    AfterImageResponse,
    ConsultationPayload,
    ConsultationRequest,
    ErrorResponse,
)
from deskgarden.utils.gemini import generate_after_image_with_retry
from deskgarden.utils.image import split_data_uri

logger = structlog.get_logger()

router = APIRouter(tags=["consultations"])

MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB


@lru_cache(maxsize=1)
def get_pipeline() -> ConsultationPipeline:
    return build_pipeline()


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(
            exclude_none=True
        ),
    )


def _check_image(image: str) -> JSONResponse | None:
    """Return a 413/422 response when the data URI is unusable, else None."""
    try:
        _, raw = split_data_uri(image)
    except ValueError:
        return _error(422, "invalid_image", "Image must be a base64 data URI")
    if not raw:
        return _error(422, "invalid_image", "Image is empty")
    if len(raw) > MAX_IMAGE_BYTES:
        return _error(413, "file_too_large", "Image exceeds 20 MB limit")
    return None


@router.post(
    "/consultations",
    response_model=ConsultationPayload,
    responses={
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def create_consultation(
    body: ConsultationRequest,
    pipeline: ConsultationPipeline = Depends(get_pipeline),
):
    if (error := _check_image(body.image)) is not None:
        return error
    logger.info("consultation_requested", style=body.style, has_prompt=bool(body.user_prompt))
    return await pipeline.run(body.image, body.style, body.user_prompt)


@router.post(
    "/after-images",
    response_model=AfterImageResponse,
    responses={
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def create_after_image(body: AfterImageRequest):
    if (error := _check_image(body.image)) is not None:
        return error
    logger.info("after_image_requested", style=body.style)
    image = await generate_after_image_with_retry(
        build_after_image_prompt(body.prompt, body.style),
        body.image,
    )
    return AfterImageResponse(image=image)
