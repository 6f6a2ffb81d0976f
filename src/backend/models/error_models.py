"""
Error response models for orgchat.

REST errors use the {"error": {...}} envelope; WebSocket errors are a single
frame with type="error". Both carry an ErrorCode so clients can branch on the
category without parsing messages.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Error codes grouped by category prefix."""

    # Identity
    AUTH_REQUIRED = "AUTH_1001"

    # Request validation
    VALIDATION_ERROR = "VAL_2001"

    # Routing
    RESOURCE_NOT_FOUND = "RES_3001"
    METHOD_NOT_ALLOWED = "RES_3002"

    # Conversations
    CONVERSATION_NOT_FOUND = "CONV_4001"

    # WebSocket protocol
    WS_MESSAGE_INVALID = "WS_6002"
    WS_TIMEOUT = "WS_6004"

    # AI provider and agent
    EXTERNAL_TIMEOUT = "EXT_7002"
    EXTERNAL_RATE_LIMITED = "EXT_7003"
    OPENAI_ERROR = "EXT_7010"
    AGENT_NOT_CONFIGURED = "EXT_7020"

    # Database
    DATABASE_ERROR = "DB_8001"
    DATABASE_UNAVAILABLE = "DB_8002"
    DATABASE_TIMEOUT = "DB_8003"

    # Internal
    INTERNAL_ERROR = "INT_9001"
    INTERNAL_UNEXPECTED = "INT_9999"


class ErrorDetail(BaseModel):
    """One field-level problem inside an error response."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """REST error body.

    Example response:
    {
        "error": {
            "code": "CONV_4001",
            "message": "Conversation not found or access denied",
            "request_id": "req_abc123",
            "timestamp": "2025-01-15T10:30:00Z",
            "path": "/api/v1/conversations/1b4e..."
        }
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    # Only rendered when settings.debug is on
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        if include_debug and self.debug:
            data["debug"] = self.debug
        return {"error": data}


class WebSocketError(BaseModel):
    """Error frame sent on the chat socket."""

    type: str = "error"
    code: ErrorCode
    message: str
    request_id: str | None = None
    conversation_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    recoverable: bool = True
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.CONVERSATION_NOT_FOUND: 404,
    ErrorCode.METHOD_NOT_ALLOWED: 405,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.EXTERNAL_RATE_LIMITED: 429,
    ErrorCode.OPENAI_ERROR: 502,
    ErrorCode.EXTERNAL_TIMEOUT: 503,
    ErrorCode.AGENT_NOT_CONFIGURED: 503,
    ErrorCode.DATABASE_UNAVAILABLE: 503,
    ErrorCode.DATABASE_TIMEOUT: 504,
}


def get_status_code(code: ErrorCode) -> int:
    """HTTP status for an error code; anything unmapped is a 500."""
    return ERROR_CODE_TO_STATUS.get(code, 500)
