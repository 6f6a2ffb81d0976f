"""
WebSocket error helpers for the chat endpoint.

Errors are sent as {"type": "error", ...} frames; fatal ones are followed by
a close with an application close code.
"""

from __future__ import annotations

import contextlib

from typing import Any

import asyncpg

from fastapi import WebSocket
from openai import (
    APIError as OpenAIAPIError,
    APITimeoutError as OpenAITimeoutError,
    RateLimitError as OpenAIRateLimitError,
)

from api.middleware.request_context import get_request_id
from integrations.agent_gateway import AgentConfigurationError
from models.error_models import ErrorCode, WebSocketError
from utils.db_utils import DatabaseError
from utils.logger import logger


class WSCloseCode:
    """WebSocket close codes (RFC 6455 + application-specific 4xxx)."""

    NORMAL = 1000
    GOING_AWAY = 1001
    POLICY_VIOLATION = 1008
    INTERNAL_ERROR = 1011

    AUTH_REQUIRED = 4401
    CONVERSATION_NOT_FOUND = 4404
    RATE_LIMITED = 4429
    SERVER_ERROR = 4500
    SERVICE_UNAVAILABLE = 4503
    TIMEOUT = 4504


ERROR_CODE_TO_WS_CLOSE: dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: WSCloseCode.AUTH_REQUIRED,
    ErrorCode.CONVERSATION_NOT_FOUND: WSCloseCode.CONVERSATION_NOT_FOUND,
    ErrorCode.EXTERNAL_RATE_LIMITED: WSCloseCode.RATE_LIMITED,
    ErrorCode.EXTERNAL_TIMEOUT: WSCloseCode.TIMEOUT,
    ErrorCode.DATABASE_UNAVAILABLE: WSCloseCode.SERVICE_UNAVAILABLE,
    ErrorCode.AGENT_NOT_CONFIGURED: WSCloseCode.SERVICE_UNAVAILABLE,
    ErrorCode.INTERNAL_ERROR: WSCloseCode.SERVER_ERROR,
    ErrorCode.WS_TIMEOUT: WSCloseCode.TIMEOUT,
}


async def send_ws_error(
    websocket: WebSocket,
    code: ErrorCode,
    message: str,
    conversation_id: str | None = None,
    recoverable: bool = True,
    details: dict[str, Any] | None = None,
) -> None:
    """Send a standardized error frame. A closed socket is logged, not raised."""
    error = WebSocketError(
        code=code,
        message=message,
        request_id=get_request_id(),
        conversation_id=conversation_id,
        recoverable=recoverable,
        details=details,
    )

    try:
        await websocket.send_json(error.to_dict())
    except Exception as e:
        logger.warning(f"Failed to send WebSocket error: {e}")


async def close_with_error(
    websocket: WebSocket,
    code: ErrorCode,
    message: str,
    conversation_id: str | None = None,
) -> None:
    """Send a non-recoverable error frame, then close with the matching close code."""
    await send_ws_error(websocket, code=code, message=message, conversation_id=conversation_id, recoverable=False)

    ws_close_code = ERROR_CODE_TO_WS_CLOSE.get(code, WSCloseCode.SERVER_ERROR)
    with contextlib.suppress(Exception):
        # Close reasons are capped at 123 bytes
        await websocket.close(code=ws_close_code, reason=message.encode("utf-8")[:123].decode("utf-8", errors="ignore"))


def exception_to_error_code(exc: Exception) -> ErrorCode:
    """Map exception types to error codes. First match wins, so subclasses come first."""
    if isinstance(exc, DatabaseError):
        return exc.code

    type_mapping: list[tuple[type, ErrorCode]] = [
        (AgentConfigurationError, ErrorCode.AGENT_NOT_CONFIGURED),
        (OpenAIRateLimitError, ErrorCode.EXTERNAL_RATE_LIMITED),
        (OpenAITimeoutError, ErrorCode.EXTERNAL_TIMEOUT),
        (OpenAIAPIError, ErrorCode.OPENAI_ERROR),
        (asyncpg.PostgresError, ErrorCode.DATABASE_ERROR),
        (TimeoutError, ErrorCode.WS_TIMEOUT),
        (ValueError, ErrorCode.VALIDATION_ERROR),
    ]

    for exc_type, code in type_mapping:
        if isinstance(exc, exc_type):
            return code
    return ErrorCode.INTERNAL_ERROR


def is_recoverable(code: ErrorCode) -> bool:
    """Whether the client may keep using the connection after this error."""
    return code not in {
        ErrorCode.AUTH_REQUIRED,
        ErrorCode.CONVERSATION_NOT_FOUND,
        ErrorCode.AGENT_NOT_CONFIGURED,
        ErrorCode.INTERNAL_ERROR,
    }


__all__ = [
    "ERROR_CODE_TO_WS_CLOSE",
    "WSCloseCode",
    "close_with_error",
    "exception_to_error_code",
    "is_recoverable",
    "send_ws_error",
]
