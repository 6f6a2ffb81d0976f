"""
Global exception handlers for the orgchat API.

Every error leaves the API as the {"error": {...}} envelope from
models.error_models, with the request id attached for correlation.

Handled here, by what raises them:
    AuthenticationError         auth dependency, caller has no identity
    ConversationNotFoundError   conversation routes (missing, deleted or not owned)
    ValidationException         conversation routes (empty title after sanitizing)
    AgentConfigurationError     resume, when the organization's agent cannot start
    DatabaseError, PostgresError   repository calls under every route
    ValidationError             stored documents that no longer validate
    HTTPException               framework 404/405 and explicit raises
"""

from __future__ import annotations

import traceback

from typing import Any

import asyncpg

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.middleware.request_context import get_request_context, get_request_id
from core.constants import ERROR_CONVERSATION_ACCESS, get_settings
from integrations.agent_gateway import AgentConfigurationError
from models.error_models import ErrorCode, ErrorDetail, ErrorResponse, get_status_code
from utils.db_utils import DatabaseError
from utils.logger import logger


class AppException(Exception):
    """Base application exception carrying an error code.

    Example:
        raise AppException(code=ErrorCode.VALIDATION_ERROR, message="Title cannot be empty")
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class AuthenticationError(AppException):
    """Missing or unusable caller identity."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(code=ErrorCode.AUTH_REQUIRED, message=message)


class ConversationNotFoundError(AppException):
    """Conversation missing, deleted, or owned by someone else (indistinguishable)."""

    def __init__(self, conversation_id: str):
        super().__init__(
            code=ErrorCode.CONVERSATION_NOT_FOUND,
            message=ERROR_CONVERSATION_ACCESS,
            details={"conversation_id": conversation_id},
        )


class ValidationException(AppException):
    """Request content that passed schema validation but is still unusable."""

    def __init__(self, message: str = "Validation error", field: str | None = None):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details={field: message} if field else None,
        )


def _error_json(
    request: Request,
    status_code: int,
    code: ErrorCode,
    message: str,
    details: list[ErrorDetail] | None = None,
    debug_info: dict[str, Any] | None = None,
) -> JSONResponse:
    error_response = ErrorResponse(
        code=code,
        message=message,
        request_id=get_request_id(),
        path=request.url.path,
        details=details,
        debug=debug_info,
    )
    return JSONResponse(status_code=status_code, content=error_response.to_dict(include_debug=debug_info is not None))


def _log_error(error: Exception, code: ErrorCode, status_code: int) -> None:
    """Log at error level for 5xx and warning level for 4xx, with request context."""
    ctx = get_request_context()
    log_context = ctx.to_log_context() if ctx else {}
    log_context["error_code"] = code.value
    log_context["status_code"] = status_code

    if status_code >= 500:
        logger.error(f"Server error: {code.value} - {error}", exc_info=True, **log_context)
    else:
        logger.warning(f"Client error: {code.value} - {error}", **log_context)


def _validation_details(errors: Any) -> list[ErrorDetail]:
    return [
        ErrorDetail(field=".".join(str(loc) for loc in error["loc"]), message=error["msg"], code=error["type"])
        for error in errors
    ]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    status_code = get_status_code(exc.code)
    details = [ErrorDetail(field=k, message=str(v)) for k, v in (exc.details or {}).items() if v is not None]
    _log_error(exc, exc.code, status_code)
    return _error_json(request, status_code, exc.code, exc.message, details=details or None)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle framework HTTP errors (unknown route, wrong method) in the same envelope."""
    status_to_code = {
        401: ErrorCode.AUTH_REQUIRED,
        404: ErrorCode.RESOURCE_NOT_FOUND,
        405: ErrorCode.METHOD_NOT_ALLOWED,
        422: ErrorCode.VALIDATION_ERROR,
    }
    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    _log_error(exc, code, exc.status_code)
    return _error_json(request, exc.status_code, code, message)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    _log_error(exc, ErrorCode.VALIDATION_ERROR, 422)
    return _error_json(
        request,
        422,
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        details=_validation_details(exc.errors()),
    )


async def pydantic_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle model validation failing inside a handler, e.g. on a stored preferences document."""
    _log_error(exc, ErrorCode.VALIDATION_ERROR, 422)
    return _error_json(
        request,
        422,
        ErrorCode.VALIDATION_ERROR,
        "Data validation failed",
        details=_validation_details(exc.errors()),
    )


async def agent_configuration_exception_handler(request: Request, exc: AgentConfigurationError) -> JSONResponse:
    code = ErrorCode.AGENT_NOT_CONFIGURED
    status_code = get_status_code(code)
    _log_error(exc, code, status_code)
    return _error_json(request, status_code, code, str(exc))


async def database_exception_handler(request: Request, exc: DatabaseError | asyncpg.PostgresError) -> JSONResponse:
    """Handle pool, timeout and PostgreSQL failures from the repository."""
    code = exc.code if isinstance(exc, DatabaseError) else ErrorCode.DATABASE_ERROR
    status_code = get_status_code(code)
    debug_info = None
    if get_settings().debug:
        debug_info = {"error_class": type(exc).__name__, "pg_error_code": getattr(exc, "sqlstate", None)}

    _log_error(exc, code, status_code)
    return _error_json(request, status_code, code, "Database operation failed", debug_info=debug_info)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        request_id=get_request_id(),
        path=request.url.path,
    )

    debug_info = None
    if get_settings().debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": traceback.format_exc(),
        }
    return _error_json(request, 500, ErrorCode.INTERNAL_UNEXPECTED, "An unexpected error occurred", debug_info=debug_info)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    # Starlette types handlers as taking Exception; narrower handlers are safe at runtime
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationError, pydantic_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(AgentConfigurationError, agent_configuration_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DatabaseError, database_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(asyncpg.PostgresError, database_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "AppException",
    "AuthenticationError",
    "ConversationNotFoundError",
    "ValidationException",
    "register_exception_handlers",
]
