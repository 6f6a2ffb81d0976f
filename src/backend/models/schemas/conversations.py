"""
Conversation and message API schemas.

Request/response models for conversation CRUD, message history and
thread resume, with OpenAPI examples.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from models.conversation_models import Conversation, Message, ThreadBinding

# =============================================================================
# Request Models
# =============================================================================


class CreateConversationRequest(BaseModel):
    """Request body for creating a conversation."""

    model_config = ConfigDict(json_schema_extra={"example": {"title": "Quarterly planning"}})

    title: str | None = Field(
        default=None,
        max_length=200,
        description="Optional title (defaults to 'New Conversation', derived from the first message)",
        json_schema_extra={"example": "Quarterly planning"},
    )


class UpdateConversationRequest(BaseModel):
    """Request body for renaming a conversation."""

    model_config = ConfigDict(json_schema_extra={"example": {"title": "Renamed conversation"}})

    title: str = Field(
        ...,
        max_length=200,
        description="New title; sanitized and shortened to 50 characters",
        json_schema_extra={"example": "Renamed conversation"},
    )


# =============================================================================
# Response Models
# =============================================================================


class ConversationResponse(BaseModel):
    """Conversation metadata visible to its owner."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "1b4e28ba-2fa1-11d2-883f-0016d3cca427",
                "title": "Quarterly planning",
                "organization_id": "acme",
                "message_count": 4,
                "created_at": "2025-01-15T10:30:00Z",
                "updated_at": "2025-01-15T10:42:00Z",
                "has_active_thread": True,
            }
        }
    )

    id: str = Field(..., description="Conversation id (UUID)")
    title: str = Field(..., description="Conversation title")
    organization_id: str | None = Field(default=None, description="Owning organization, if any")
    message_count: int = Field(default=0, ge=0, description="Persisted messages in the conversation")
    created_at: datetime = Field(..., description="Creation time (UTC)")
    updated_at: datetime = Field(..., description="Last activity (UTC)")
    has_active_thread: bool = Field(default=False, description="Conversation record holds an unexpired thread binding")

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> ConversationResponse:
        binding = conversation.thread_binding
        return cls(
            id=conversation.id,
            title=conversation.title,
            organization_id=conversation.organization_id,
            message_count=conversation.message_count,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            has_active_thread=binding is not None and binding.is_valid(),
        )


class ConversationListResponse(BaseModel):
    """Most recently updated conversations first."""

    conversations: list[ConversationResponse] = Field(default_factory=list)
    count: int = Field(default=0, ge=0, description="Number of conversations returned")


class DeleteConversationResponse(BaseModel):
    success: bool = Field(..., description="Conversation was deleted")


class MessageResponse(BaseModel):
    """A persisted conversation message."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "9b2f0c7e-7d43-4a57-a0ad-3c2f3f1d6f10",
                "role": "assistant",
                "content": "Here is a summary of the plan...",
                "timestamp": "2025-01-15T10:31:02Z",
                "metadata": {"model_name": "gpt-4o", "response_time_ms": 1820.4, "tokens_used": 212},
            }
        }
    )

    id: str
    role: str = Field(..., description="'user', 'assistant' or 'system'")
    content: str
    timestamp: datetime
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_message(cls, message: Message) -> MessageResponse:
        return cls(
            id=message.id,
            role=message.role.value,
            content=message.content,
            timestamp=message.timestamp,
            metadata=message.metadata.model_dump(exclude_none=True) if message.metadata else None,
        )


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: list[MessageResponse] = Field(default_factory=list, description="Oldest first")


class ResumeConversationResponse(BaseModel):
    """Whether the conversation's agent thread is still live."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "resumed": True,
                "thread_id": "thread_1b4e28ba-2fa1-11d2-883f-0016d3cca427_20250115103000_a1b2c3d4",
                "expires_at": "2025-01-16T10:30:00Z",
            }
        }
    )

    resumed: bool = Field(..., description="A live thread was found; the next message continues it")
    thread_id: str | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_binding(cls, binding: ThreadBinding | None) -> ResumeConversationResponse:
        if binding is None:
            return cls(resumed=False)
        return cls(resumed=True, thread_id=binding.thread_id, expires_at=binding.expires_at)
