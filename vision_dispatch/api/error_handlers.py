from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vision_dispatch.core.errors import AnalysisError, ErrorKind
from vision_dispatch.pipelines.concurrency import QUEUE_FULL, REQUEST_CANCELLED, ConcurrencyError
from vision_dispatch.pipelines.image_pipeline import ImageValidationFailed


logger = logging.getLogger(__name__)

ANALYSIS_ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.FILE_NOT_FOUND: 404,
    ErrorKind.ENDPOINT_ERROR_4XX: 502,
    ErrorKind.ENDPOINT_ERROR_5XX: 502,
    ErrorKind.ENDPOINT_UNREACHABLE: 503,
    ErrorKind.LOCAL_ENGINE_NOT_FOUND: 503,
    ErrorKind.LOCAL_ENGINE_TIMEOUT: 504,
}

VALIDATION_STATUS = {
    "FILE_NOT_FOUND": 404,
    "FILE_TOO_LARGE": 413,
    "INVALID_MIME_TYPE": 415,
}

CONCURRENCY_STATUS = {
    QUEUE_FULL: 429,
    REQUEST_CANCELLED: 503,
}


def _get_request_id(request: Request) -> Optional[str]:
    """
    Best-effort request_id retrieval.
    - RequestIdMiddleware sets request.state.request_id
    - otherwise fall back to the inbound header
    """
    rid = getattr(getattr(request, "state", None), "request_id", None)
    if rid:
        return rid
    return request.headers.get("X-Request-Id")


def _error_payload(code: str, message: str, request_id: Optional[str], **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    body.update({k: v for k, v in extra.items() if v is not None})
    return {"error": body}


def _respond(request: Request, status_code: int, payload: Dict[str, Any]) -> JSONResponse:
    rid = _get_request_id(request)
    return JSONResponse(
        status_code=status_code,
        content=payload,
        headers={"X-Request-Id": rid} if rid else None,
    )


async def analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    status = ANALYSIS_ERROR_STATUS.get(exc.kind, 500)
    logger.info("analysis_error kind=%s status=%d msg=%s", exc.kind.value, status, exc.message)
    return _respond(
        request,
        status,
        _error_payload(
            code=exc.kind.value,
            message=exc.message,
            request_id=_get_request_id(request),
            recovery_hint=exc.recovery_hint,
            retryable=exc.retryable,
        ),
    )


async def image_validation_handler(request: Request, exc: ImageValidationFailed) -> JSONResponse:
    return _respond(
        request,
        VALIDATION_STATUS.get(exc.issue.code, 400),
        _error_payload(code=exc.issue.code, message=exc.issue.message, request_id=_get_request_id(request)),
    )


async def concurrency_error_handler(request: Request, exc: ConcurrencyError) -> JSONResponse:
    return _respond(
        request,
        CONCURRENCY_STATUS.get(exc.code, 503),
        _error_payload(
            code=exc.code,
            message=exc.message,
            request_id=_get_request_id(request),
            details=exc.details.to_dict(),
            retryable=True,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Normalize FastAPI HTTPException into the global error schema.
    detail may be {"code": ..., "message": ...} or a plain string.
    """
    code = "http_error"
    message = "Request failed"

    if isinstance(exc.detail, dict):
        code = str(exc.detail.get("code", code))
        message = str(exc.detail.get("message", message))
    elif isinstance(exc.detail, str):
        message = exc.detail

    return _respond(request, exc.status_code, _error_payload(code, message, _get_request_id(request)))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # short summary like "imagePath: Field required; mode: Input should be 'local' or 'cloud'"
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", []) if x not in ("body", "query"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else str(msg))

    message = "; ".join(parts) if parts else "Validation error"
    return _respond(request, 422, _error_payload("validation_error", message, _get_request_id(request)))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error")
    return _respond(
        request,
        500,
        _error_payload("internal_error", "Internal server error", _get_request_id(request)),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AnalysisError, analysis_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ImageValidationFailed, image_validation_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ConcurrencyError, concurrency_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
