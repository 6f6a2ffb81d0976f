from __future__ import annotations

from typing import Any

from api.services.conversation_repository import ConversationRepository
from models.conversation_models import UserPreferences, utc_now
from utils.logger import logger


class PreferencesService:
    """Per-user preference documents with defaults for new users."""

    def __init__(self, repository: ConversationRepository):
        self.repository = repository

    async def get_preferences(self, user_id: str) -> UserPreferences:
        stored = await self.repository.get_preferences(user_id)
        return stored or UserPreferences(user_id=user_id)

    async def update_preferences(self, user_id: str, updates: dict[str, Any]) -> UserPreferences:
        """Merge a partial update into the current document and store it."""
        current = await self.get_preferences(user_id)
        merged = current.model_dump()
        for key, value in updates.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        merged.update(user_id=user_id, updated_at=utc_now())

        preferences = UserPreferences.model_validate(merged)
        saved = await self.repository.upsert_preferences(preferences)
        logger.info(f"Updated preferences for user {user_id}")
        return saved
