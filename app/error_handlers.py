"""Centralized error handling for the API."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import (
    ArtifactMissingError,
    JobNotFoundError,
    QueueUnavailableError,
    ReelsmithError,
    ResultNotReadyError,
)

logger = logging.getLogger("reelsmith.api.errors")


class ErrorResponse(BaseModel):
    """Structured error response model."""

    error: str = Field(..., description="Error type or name")
    detail: str = Field(..., description="Human-readable error message")
    code: str = Field(..., description="Machine-readable error code")
    status_code: int = Field(..., description="HTTP status code")


_DOMAIN_STATUS: dict[type[ReelsmithError], int] = {
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    ArtifactMissingError: status.HTTP_404_NOT_FOUND,
    ResultNotReadyError: status.HTTP_400_BAD_REQUEST,
    QueueUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_ERROR_CODES = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def error_to_response(error: str, detail: str, status_code: int) -> ErrorResponse:
    """Create a structured error response."""
    return ErrorResponse(
        error=error,
        detail=detail,
        code=_ERROR_CODES.get(status_code, "UNKNOWN_ERROR"),
        status_code=status_code,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException with structured response."""
    error_response = error_to_response(
        error=exc.__class__.__name__,
        detail=str(exc.detail),
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=error_response.model_dump())


async def domain_exception_handler(request: Request, exc: ReelsmithError) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _DOMAIN_STATUS.items():
        if isinstance(exc, error_type):
            status_code = mapped
            break
    if status_code >= 500:
        logger.warning("request failed: %s", exc)
    error_response = error_to_response(
        error=exc.__class__.__name__,
        detail=str(exc),
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle general exceptions with structured response."""
    logger.exception("Unhandled exception occurred", exc_info=exc)

    error_response = error_to_response(
        error=exc.__class__.__name__,
        detail="An internal error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )

    # Include detailed error in debug mode
    settings = getattr(request.app.state, "settings", None)
    if settings is not None and settings.debug:
        error_response.detail = str(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response.model_dump(),
    )


def install_error_handlers(app: Any) -> None:
    """Install error handlers on the FastAPI app."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(ReelsmithError, domain_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
