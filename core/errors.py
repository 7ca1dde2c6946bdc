"""
Error envelope and FastAPI exception handlers.

Every failure leaves the API as
``{"error": {"code", "message", "request_id"[, "details"]}}``.
Upstream model failures map to 502, graph store failures to 503.
"""

from __future__ import annotations

# Standard library
import logging
from enum import Enum
from typing import Any

# Third-party
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Local application
from core.providers import EmbeddingError, ProviderError
from knowledge_graph.store import StoreError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Codes clients can branch on."""

    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EXTRACTION_DISABLED = "EXTRACTION_DISABLED"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    GRAPH_STORE_UNAVAILABLE = "GRAPH_STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_CODE_BY_STATUS: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    422: ErrorCode.VALIDATION_ERROR,
    502: ErrorCode.PROVIDER_ERROR,
    503: ErrorCode.GRAPH_STORE_UNAVAILABLE,
}


class AppError(Exception):
    """Error raised by route code with an explicit status and code."""

    def __init__(
        self,
        *,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def code_for_status(status_code: int) -> ErrorCode:
    """Canonical code for an HTTP status."""
    if status_code in _CODE_BY_STATUS:
        return _CODE_BY_STATUS[status_code]
    return ErrorCode.BAD_REQUEST if 400 <= status_code < 500 else ErrorCode.INTERNAL_ERROR


def error_response(
    request: Request,
    code: ErrorCode,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Render the error envelope, tagged with the request id."""
    body: dict[str, Any] = {
        "code": code.value,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    return error_response(request, exc.code, exc.message, exc.status_code, exc.details)


async def handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    """
    Upstream model failure.

    Only query embedding lets a provider error escape the engine; everything
    else degrades to empty output.
    """
    code = ErrorCode.EMBEDDING_FAILED if isinstance(exc, EmbeddingError) else ErrorCode.PROVIDER_ERROR
    logger.error("Provider failure on %s: %s", request.url.path, exc)
    return error_response(request, code, str(exc) or "Model provider failed", 502)


async def handle_store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Graph store failure on %s: %s", request.url.path, exc)
    return error_response(request, ErrorCode.GRAPH_STORE_UNAVAILABLE, "Graph store unavailable", 503)


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTPException raised by routes or dependencies."""
    details: dict[str, Any] | None = None
    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        message = str(exc.detail.get("message") or "Request failed")
        details = exc.detail
    else:
        message = "Request failed"
        details = {"detail": exc.detail} if exc.detail is not None else None
    return error_response(request, code_for_status(exc.status_code), message, exc.status_code, details)


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        422,
        {"errors": jsonable_encoder(exc.errors())},
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=exc)
    return error_response(request, ErrorCode.INTERNAL_ERROR, "Internal server error", 500)


def register_error_handlers(app: FastAPI) -> None:
    """Attach every handler above to ``app``."""
    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(ProviderError, handle_provider_error)
    app.add_exception_handler(StoreError, handle_store_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected)
