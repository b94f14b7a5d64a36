"""
API Error Handling
==================

Every error response from the API uses the same envelope:

    {"error_code": "NOT_FOUND", "message": "...", "details": {...}}

Engine exceptions (automode.exceptions) are mapped to HTTP statuses:

- FeatureNotFound                      -> 404 NOT_FOUND
- LoopAlreadyRunning, InvalidTransition -> 409 CONFLICT
- CycleDetected                        -> 409 CONFLICT
- WorkspaceUnavailable                 -> 422 WORKSPACE_UNAVAILABLE
- other AutoModeError                  -> 500 ENGINE_ERROR
- SQLAlchemyError                      -> 500 DATABASE_ERROR
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from automode.exceptions import (
    AutoModeError,
    CycleDetected,
    FeatureNotFound,
    InvalidTransition,
    LoopAlreadyRunning,
    WorkspaceUnavailable,
)

_logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Standardized API error response."""

    error_code: str = Field(
        ...,
        description="Machine-readable error code for programmatic handling",
        examples=["NOT_FOUND", "CONFLICT", "WORKSPACE_UNAVAILABLE"],
    )
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] | None = Field(
        default=None,
        description="Optional additional error details",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "CONFLICT",
                "message": "Auto loop already running for /work/app (main)",
                "details": {"project_path": "/work/app", "branch_name": None},
            }
        }
    )


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    WORKSPACE_UNAVAILABLE = "WORKSPACE_UNAVAILABLE"
    ENGINE_ERROR = "ENGINE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_REQUEST = "BAD_REQUEST"


class APIError(Exception):
    """Base class for errors raised directly by route handlers."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error_code=self.error_code, message=self.message, details=self.details)


class NotFoundError(APIError):
    """
    Resource not found.

    Example:
        raise NotFoundError("project", "/work/app")
        # {"error_code": "NOT_FOUND", "message": "Project '/work/app' not found"}
    """

    def __init__(self, resource: str, identifier: Any = None, message: str | None = None):
        if message is None:
            if identifier is not None:
                message = f"{resource.title()} '{identifier}' not found"
            else:
                message = f"{resource.title()} not found"

        details: dict[str, Any] = {"resource": resource}
        if identifier is not None:
            details["id"] = identifier

        super().__init__(
            error_code=ErrorCode.NOT_FOUND,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


def create_error_response(
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {"error_code": error_code, "message": message}
    if details is not None:
        response["details"] = details
    return response


def map_engine_error(exc: AutoModeError) -> tuple[int, str, dict[str, Any] | None]:
    """Return (status code, error code, details) for an engine exception."""
    if isinstance(exc, FeatureNotFound):
        return (
            status.HTTP_404_NOT_FOUND,
            ErrorCode.NOT_FOUND,
            {"resource": "feature", "id": exc.feature_id},
        )
    if isinstance(exc, LoopAlreadyRunning):
        return (
            status.HTTP_409_CONFLICT,
            ErrorCode.CONFLICT,
            {"project_path": exc.project_path, "branch_name": exc.branch_name},
        )
    if isinstance(exc, InvalidTransition):
        return (
            status.HTTP_409_CONFLICT,
            ErrorCode.CONFLICT,
            {
                "feature_id": exc.feature_id,
                "current_state": exc.current_state,
                "target_state": exc.target_state,
            },
        )
    if isinstance(exc, CycleDetected):
        return status.HTTP_409_CONFLICT, ErrorCode.CONFLICT, {"cycle": list(exc.cycle)}
    if isinstance(exc, WorkspaceUnavailable):
        return (
            422,
            ErrorCode.WORKSPACE_UNAVAILABLE,
            {"project_path": exc.project_path, "branch_name": exc.branch_name, "reason": exc.reason},
        )
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.ENGINE_ERROR, None


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.error_code, exc.message, exc.details),
    )


async def engine_error_handler(request: Request, exc: AutoModeError) -> JSONResponse:
    status_code, error_code, details = map_engine_error(exc)
    if status_code >= 500:
        _logger.error("Engine error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content=create_error_response(error_code, str(exc), details),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten Pydantic validation errors into field/message pairs."""
    errors = []
    for error in exc.errors():
        field_parts = [str(p) for p in error.get("loc", []) if p != "body"]
        errors.append({
            "field": ".".join(field_parts) if field_parts else "unknown",
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        })

    if len(errors) == 1:
        message = f"Validation error on field '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Validation failed with {len(errors)} errors"

    return JSONResponse(
        status_code=422,
        content=create_error_response(ErrorCode.VALIDATION_ERROR, message, {"errors": errors}),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    status_to_code = {
        400: ErrorCode.BAD_REQUEST,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
    }
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR), message
        ),
    )


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """The underlying database error is logged, never sent to the client."""
    _logger.exception("Database error: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(ErrorCode.DATABASE_ERROR, "A database error occurred"),
    )


def register_exception_handlers(app) -> None:
    """Install the handlers above on a FastAPI app."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(AutoModeError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)


__all__ = [
    "ErrorResponse",
    "ErrorCode",
    "APIError",
    "NotFoundError",
    "map_engine_error",
    "register_exception_handlers",
]
