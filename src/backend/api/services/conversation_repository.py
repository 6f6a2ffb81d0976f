"""
PostgreSQL document store for conversations, messages and preferences.

Soft-deleted rows stay in the tables with is_deleted = TRUE and every read
filters them out. Ids that are not valid UUIDs read as "not found".
"""

from __future__ import annotations

import json

from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from core.constants import HISTORY_LOAD_LIMIT, LIST_CONVERSATIONS_LIMIT
from models.conversation_models import (
    AIConfig,
    Conversation,
    Message,
    MessageMetadata,
    MessageRole,
    Organization,
    ThreadBinding,
    UserPreferences,
    utc_now,
)
from utils.db_utils import acquire_connection, transaction, with_retry
from utils.logger import logger


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        loaded = json.loads(value)
        return loaded if isinstance(loaded, dict) else {}
    return dict(value)


class ConversationRepository:
    """Conversation, message, preference and organization persistence."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO conversations (
                    id, user_id, organization_id, title, message_count,
                    is_deleted, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, FALSE, $6, $7)
                RETURNING *
                """,
                UUID(conversation.id),
                conversation.user_id,
                conversation.organization_id,
                conversation.title,
                conversation.message_count,
                conversation.created_at,
                conversation.updated_at,
            )
        logger.debug(f"Created conversation {conversation.id} for user {conversation.user_id}")
        return self._row_to_conversation(row)

    @with_retry()
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Point read by id. Deleted conversations are returned with is_deleted set."""
        cid = _as_uuid(conversation_id)
        if cid is None:
            return None

        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow("SELECT * FROM conversations WHERE id = $1", cid)
        if not row:
            return None
        return self._row_to_conversation(row)

    @with_retry()
    async def list_conversations(self, user_id: str, limit: int = LIST_CONVERSATIONS_LIMIT) -> list[Conversation]:
        async with acquire_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM conversations
                WHERE user_id = $1 AND is_deleted = FALSE
                ORDER BY updated_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [self._row_to_conversation(r) for r in rows]

    async def update_conversation(self, conversation: Conversation) -> bool:
        """Write back the mutable fields of a conversation."""
        binding = conversation.thread_binding
        async with acquire_connection(self.pool) as conn:
            result: str = await conn.execute(
                """
                UPDATE conversations
                SET title = $2,
                    message_count = $3,
                    updated_at = $4,
                    agent_thread_id = $5,
                    agent_thread_created_at = $6,
                    agent_thread_expires_at = $7
                WHERE id = $1 AND is_deleted = FALSE
                """,
                UUID(conversation.id),
                conversation.title,
                conversation.message_count,
                conversation.updated_at,
                binding.thread_id if binding else None,
                binding.created_at if binding else None,
                binding.expires_at if binding else None,
            )
        return result.endswith("1")

    async def soft_delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Flag a conversation and all of its messages as deleted."""
        cid = _as_uuid(conversation_id)
        if cid is None:
            return False

        now = utc_now()
        async with transaction(self.pool) as conn:
            result: str = await conn.execute(
                """
                UPDATE conversations
                SET is_deleted = TRUE, updated_at = $3,
                    agent_thread_id = NULL, agent_thread_created_at = NULL, agent_thread_expires_at = NULL
                WHERE id = $1 AND user_id = $2 AND is_deleted = FALSE
                """,
                cid,
                user_id,
                now,
            )
            if not result.endswith("1"):
                return False

            await conn.execute(
                "UPDATE messages SET is_deleted = TRUE WHERE conversation_id = $1 AND is_deleted = FALSE",
                cid,
            )
        logger.info(f"Soft-deleted conversation {conversation_id}")
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, message: Message) -> Message:
        metadata = message.metadata.model_dump(exclude_none=True) if message.metadata else {}
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages (id, conversation_id, user_id, role, content, metadata, is_deleted, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, FALSE, $7)
                RETURNING *
                """,
                UUID(message.id),
                UUID(message.conversation_id),
                message.user_id,
                message.role.value,
                message.content,
                json.dumps(metadata),
                message.timestamp,
            )
        return self._row_to_message(row)

    @with_retry()
    async def get_messages(self, conversation_id: str, limit: int = HISTORY_LOAD_LIMIT) -> list[Message]:
        """Return the most recent `limit` messages, oldest first."""
        cid = _as_uuid(conversation_id)
        if cid is None:
            return []

        async with acquire_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM (
                    SELECT * FROM messages
                    WHERE conversation_id = $1 AND is_deleted = FALSE
                    ORDER BY timestamp DESC
                    LIMIT $2
                ) recent
                ORDER BY timestamp ASC
                """,
                cid,
                limit,
            )
        return [self._row_to_message(r) for r in rows]

    @with_retry()
    async def count_messages(self, conversation_id: str) -> int:
        cid = _as_uuid(conversation_id)
        if cid is None:
            return 0

        async with acquire_connection(self.pool) as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = $1 AND is_deleted = FALSE",
                cid,
            )
        return int(count or 0)

    # ------------------------------------------------------------------
    # Preferences and organizations
    # ------------------------------------------------------------------

    @with_retry()
    async def get_preferences(self, user_id: str) -> UserPreferences | None:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT user_id, document, updated_at FROM user_preferences WHERE user_id = $1",
                user_id,
            )
        if not row:
            return None
        document = _load_json(row["document"])
        document.update(user_id=row["user_id"], updated_at=row["updated_at"])
        return UserPreferences.model_validate(document)

    async def upsert_preferences(self, preferences: UserPreferences) -> UserPreferences:
        document = preferences.model_dump(mode="json", exclude={"user_id", "updated_at"})
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO user_preferences (user_id, document, updated_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE
                SET document = EXCLUDED.document, updated_at = EXCLUDED.updated_at
                RETURNING user_id, document, updated_at
                """,
                preferences.user_id,
                json.dumps(document),
                preferences.updated_at,
            )
        stored = _load_json(row["document"])
        stored.update(user_id=row["user_id"], updated_at=row["updated_at"])
        return UserPreferences.model_validate(stored)

    @with_retry()
    async def get_organization(self, organization_id: str) -> Organization | None:
        async with acquire_connection(self.pool) as conn:
            row = await conn.fetchrow("SELECT * FROM organizations WHERE id = $1", organization_id)
        if not row:
            return None

        ai_config = _load_json(row["ai_config"])
        return Organization(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            is_active=row["is_active"],
            ai_config=AIConfig.model_validate(ai_config) if ai_config else None,
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_conversation(self, row: Any) -> Conversation:
        binding = None
        thread_id = row["agent_thread_id"]
        created_at: datetime | None = row["agent_thread_created_at"]
        expires_at: datetime | None = row["agent_thread_expires_at"]
        if thread_id and created_at and expires_at:
            binding = ThreadBinding(
                conversation_id=str(row["id"]),
                thread_id=thread_id,
                created_at=created_at,
                expires_at=expires_at,
            )

        return Conversation(
            id=str(row["id"]),
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            title=row["title"],
            message_count=row["message_count"] or 0,
            is_deleted=row["is_deleted"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            thread_binding=binding,
        )

    def _row_to_message(self, row: Any) -> Message:
        metadata = _load_json(row["metadata"])
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            user_id=row["user_id"],
            role=MessageRole(row["role"]),
            content=row["content"] or "",
            timestamp=row["timestamp"],
            metadata=MessageMetadata.model_validate(metadata) if metadata else None,
            is_deleted=row["is_deleted"],
        )
