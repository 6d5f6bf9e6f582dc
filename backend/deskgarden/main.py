import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deskgarden.activities.consultation import ConsultationFailed
from deskgarden.api.routes import consultations, health
from deskgarden.logging import configure_logging
from deskgarden.models.contracts import ErrorResponse
from deskgarden.utils.gemini import AfterImageGenerationError

configure_logging()

logger = structlog.get_logger()

app = FastAPI(
    title="Desk Garden API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


def _error_response(request: Request, status: int, error: ErrorResponse) -> JSONResponse:
    return _with_request_id(
        request,
        JSONResponse(status_code=status, content=error.model_dump(exclude_none=True)),
    )


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Bind a request ID into structlog context and echo it as X-Request-ID."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Flatten FastAPI's {"detail": [...]} into the ErrorResponse shape."""
    messages = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return _error_response(
        request,
        422,
        ErrorResponse(error="validation_error", message="; ".join(messages), retryable=False),
    )


@app.exception_handler(ConsultationFailed)
async def consultation_failed_handler(request: Request, exc: ConsultationFailed) -> JSONResponse:
    """Both generation attempts failed; the client may simply retry."""
    logger.warning("consultation_request_failed", path=request.url.path, reason=exc.reason)
    return _error_response(
        request,
        502,
        ErrorResponse(
            error="consultation_failed",
            message=exc.user_message,
            retryable=True,
            detail=exc.reason,
        ),
    )


@app.exception_handler(AfterImageGenerationError)
async def after_image_failed_handler(
    request: Request,
    exc: AfterImageGenerationError,
) -> JSONResponse:
    logger.warning("after_image_request_failed", path=request.url.path, error=str(exc))
    return _error_response(
        request,
        502,
        ErrorResponse(error="after_image_failed", message=str(exc), retryable=True),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Keep unexpected failures in the ErrorResponse shape instead of bare HTML."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(
        request,
        500,
        ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            retryable=True,
        ),
    )


app.include_router(health.router)
app.include_router(consultations.router, prefix="/api/v1")
