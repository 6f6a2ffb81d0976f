"""
Domain models for conversations, messages and thread bindings.

These are the documents the orchestrator reads and writes. API request and
response shapes live in models.schemas.
"""

from __future__ import annotations

import secrets

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from core.constants import DEFAULT_CONVERSATION_TITLE, THREAD_TTL_HOURS


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageMetadata(BaseModel):
    """Optional per-message bookkeeping (all fields optional)."""

    tokens_used: int | None = None
    model_name: str | None = None
    response_time_ms: float | None = None
    error: str | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single persisted turn. Immutable once saved except for is_deleted."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    user_id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: MessageMetadata | None = None
    is_deleted: bool = False


class ThreadBinding(BaseModel):
    """Maps a conversation to a live agent thread handle.

    The thread id is generated locally and only means something to the
    gateway instance that created the handle. A binding read back from a
    shared store in another process cannot restore agent-side context.
    """

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    thread_id: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True

    @classmethod
    def create(
        cls,
        conversation_id: str,
        thread_id: str,
        now: datetime | None = None,
        ttl: timedelta = timedelta(hours=THREAD_TTL_HOURS),
    ) -> ThreadBinding:
        created_at = now or utc_now()
        return cls(
            conversation_id=conversation_id,
            thread_id=thread_id,
            created_at=created_at,
            expires_at=created_at + ttl,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.is_active and not self.is_expired(now)


def generate_thread_id(conversation_id: str, created_at: datetime | None = None) -> str:
    """Build a local thread id: thread_{conversation}_{YYYYmmddHHMMSS}_{8 hex}."""
    stamp = (created_at or utc_now()).strftime("%Y%m%d%H%M%S")
    return f"thread_{conversation_id}_{stamp}_{secrets.token_hex(4)}"


class Conversation(BaseModel):
    """A titled, user-owned sequence of messages, optionally scoped to an organization."""

    id: str = Field(default_factory=new_id)
    user_id: str
    organization_id: str | None = None
    title: str = DEFAULT_CONVERSATION_TITLE
    message_count: int = 0
    is_deleted: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    thread_binding: ThreadBinding | None = None

    def is_owned_by(self, user_id: str) -> bool:
        return not self.is_deleted and self.user_id == user_id


class ResponseChunk(BaseModel):
    """One increment of streamed assistant output. Never persisted."""

    content: str = ""
    message_id: str | None = None
    is_complete: bool = False
    error: str | None = None
    was_saved: bool | None = None

    @classmethod
    def failure(cls, error: str, message_id: str | None = None, content: str = "") -> ResponseChunk:
        return cls(content=content, message_id=message_id, is_complete=True, error=error)


class AIConfig(BaseModel):
    """Per-organization agent override."""

    endpoint: str | None = None
    api_key: str | None = None
    model_deployment: str | None = None
    agent_name: str | None = None
    agent_instructions: str | None = None
    system_prompt: str | None = None


class Organization(BaseModel):
    id: str
    name: str
    slug: str | None = None
    is_active: bool = True
    ai_config: AIConfig | None = None


class NotificationSettings(BaseModel):
    email_enabled: bool = True
    push_enabled: bool = False
    sound_enabled: bool = True


class AIPreferences(BaseModel):
    response_style: str = "balanced"
    show_token_usage: bool = False
    stream_responses: bool = True


class UserPreferences(BaseModel):
    user_id: str
    theme: str = "light"
    language: str = "en"
    timezone: str = "UTC"
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    ai: AIPreferences = Field(default_factory=AIPreferences)
    updated_at: datetime = Field(default_factory=utc_now)
