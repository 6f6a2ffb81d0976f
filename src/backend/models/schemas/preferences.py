"""User preference API schemas."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class NotificationSettingsUpdate(BaseModel):
    email_enabled: bool | None = None
    push_enabled: bool | None = None
    sound_enabled: bool | None = None


class AIPreferencesUpdate(BaseModel):
    response_style: Literal["concise", "balanced", "detailed"] | None = None
    show_token_usage: bool | None = None
    stream_responses: bool | None = None


class UpdatePreferencesRequest(BaseModel):
    """Partial update; omitted fields keep their current value."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"theme": "dark", "ai": {"response_style": "concise"}}},
    )

    theme: Literal["light", "dark", "system"] | None = None
    language: str | None = Field(default=None, min_length=2, max_length=10)
    timezone: str | None = Field(default=None, max_length=64)
    notifications: NotificationSettingsUpdate | None = None
    ai: AIPreferencesUpdate | None = None

    def to_updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
