from __future__ import annotations

import json

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest

from api.services.conversation_repository import ConversationRepository
from models.conversation_models import (
    Conversation,
    Message,
    MessageMetadata,
    MessageRole,
    ThreadBinding,
    UserPreferences,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def _conn(pool: MagicMock) -> Any:
    return pool.acquire.return_value.__aenter__.return_value


def _conversation_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": uuid4(),
        "user_id": "user-1",
        "organization_id": None,
        "title": "New Conversation",
        "message_count": 0,
        "is_deleted": False,
        "created_at": NOW,
        "updated_at": NOW,
        "agent_thread_id": None,
        "agent_thread_created_at": None,
        "agent_thread_expires_at": None,
    }
    row.update(overrides)
    return row


def _message_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": uuid4(),
        "conversation_id": uuid4(),
        "user_id": "user-1",
        "role": "user",
        "content": "Hello",
        "metadata": "{}",
        "is_deleted": False,
        "timestamp": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def repository(mock_db_pool: MagicMock) -> ConversationRepository:
    return ConversationRepository(mock_db_pool)


# ============================================================================
# Conversations
# ============================================================================


@pytest.mark.asyncio
async def test_create_conversation(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    conversation = Conversation(user_id="user-1", organization_id="org-1", created_at=NOW, updated_at=NOW)
    conn = _conn(mock_db_pool)
    conn.fetchrow.return_value = _conversation_row(id=UUID(conversation.id), organization_id="org-1")

    created = await repository.create_conversation(conversation)

    assert created.id == conversation.id
    assert created.organization_id == "org-1"
    args = conn.fetchrow.call_args[0]
    assert "INSERT INTO conversations" in args[0]
    assert args[1] == UUID(conversation.id)
    assert args[2] == "user-1"


@pytest.mark.asyncio
async def test_get_conversation_invalid_id_skips_query(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    assert await repository.get_conversation("not-a-uuid") is None
    _conn(mock_db_pool).fetchrow.assert_not_called()


@pytest.mark.asyncio
async def test_get_conversation_not_found(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).fetchrow.return_value = None

    assert await repository.get_conversation(str(uuid4())) is None


@pytest.mark.asyncio
async def test_get_conversation_maps_thread_binding(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    cid = uuid4()
    _conn(mock_db_pool).fetchrow.return_value = _conversation_row(
        id=cid,
        message_count=4,
        agent_thread_id="thread_abc",
        agent_thread_created_at=NOW,
        agent_thread_expires_at=NOW + timedelta(hours=24),
    )

    conversation = await repository.get_conversation(str(cid))

    assert conversation is not None
    assert conversation.id == str(cid)
    assert conversation.message_count == 4
    assert conversation.thread_binding == ThreadBinding(
        conversation_id=str(cid),
        thread_id="thread_abc",
        created_at=NOW,
        expires_at=NOW + timedelta(hours=24),
    )


@pytest.mark.asyncio
async def test_list_conversations(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    conn = _conn(mock_db_pool)
    conn.fetch.return_value = [_conversation_row(), _conversation_row(title="Second")]

    conversations = await repository.list_conversations("user-1", limit=10)

    assert [c.title for c in conversations] == ["New Conversation", "Second"]
    query, user_id, limit = conn.fetch.call_args[0]
    assert "is_deleted = FALSE" in query
    assert "ORDER BY updated_at DESC" in query
    assert (user_id, limit) == ("user-1", 10)


@pytest.mark.asyncio
async def test_update_conversation_writes_binding(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    conversation = Conversation(user_id="user-1", title="Renamed", message_count=2)
    binding = ThreadBinding.create(conversation.id, "thread_1", now=NOW)
    conversation = conversation.model_copy(update={"thread_binding": binding})
    conn = _conn(mock_db_pool)
    conn.execute.return_value = "UPDATE 1"

    assert await repository.update_conversation(conversation) is True

    args = conn.execute.call_args[0]
    assert args[2:5] == ("Renamed", 2, conversation.updated_at)
    assert args[5:] == ("thread_1", binding.created_at, binding.expires_at)


@pytest.mark.asyncio
async def test_update_conversation_missing_row(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).execute.return_value = "UPDATE 0"

    assert await repository.update_conversation(Conversation(user_id="user-1")) is False


@pytest.mark.asyncio
async def test_soft_delete_flags_conversation_and_messages(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    conn = _conn(mock_db_pool)
    conn.execute.side_effect = ["UPDATE 1", "UPDATE 3"]
    cid = str(uuid4())

    assert await repository.soft_delete_conversation(cid, "user-1") is True

    conn.transaction.assert_called_once()
    first, second = (c[0][0] for c in conn.execute.call_args_list)
    assert "UPDATE conversations" in first
    assert "agent_thread_id = NULL" in first
    assert "UPDATE messages" in second


@pytest.mark.asyncio
async def test_soft_delete_unowned_does_not_touch_messages(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    conn = _conn(mock_db_pool)
    conn.execute.return_value = "UPDATE 0"

    assert await repository.soft_delete_conversation(str(uuid4()), "user-2") is False
    assert conn.execute.await_count == 1


@pytest.mark.asyncio
async def test_soft_delete_invalid_id(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    assert await repository.soft_delete_conversation("bogus", "user-1") is False
    mock_db_pool.acquire.assert_not_called()


# ============================================================================
# Messages
# ============================================================================


@pytest.mark.asyncio
async def test_save_message_serializes_metadata(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    cid = str(uuid4())
    message = Message(
        conversation_id=cid,
        user_id="user-1",
        role=MessageRole.ASSISTANT,
        content="Hi",
        metadata=MessageMetadata(tokens_used=12, model_name="gpt-4o"),
    )
    conn = _conn(mock_db_pool)
    conn.fetchrow.return_value = _message_row(
        id=UUID(message.id),
        conversation_id=UUID(cid),
        role="assistant",
        content="Hi",
        metadata={"tokens_used": 12, "model_name": "gpt-4o"},
    )

    saved = await repository.save_message(message)

    args = conn.fetchrow.call_args[0]
    assert args[4] == "assistant"
    assert json.loads(args[6]) == {"tokens_used": 12, "model_name": "gpt-4o", "additional_data": {}}
    assert saved.id == message.id
    assert saved.metadata is not None
    assert saved.metadata.tokens_used == 12


@pytest.mark.asyncio
async def test_get_messages_oldest_first_query(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    conn = _conn(mock_db_pool)
    conn.fetch.return_value = [_message_row(content="one"), _message_row(role="assistant", content="two", metadata=None)]

    messages = await repository.get_messages(str(uuid4()), limit=5)

    assert [m.content for m in messages] == ["one", "two"]
    assert messages[1].role == MessageRole.ASSISTANT
    assert messages[1].metadata is None
    query = conn.fetch.call_args[0][0]
    assert "ORDER BY timestamp DESC" in query
    assert "ORDER BY timestamp ASC" in query


@pytest.mark.asyncio
async def test_get_messages_invalid_id(repository: ConversationRepository) -> None:
    assert await repository.get_messages("bogus") == []


@pytest.mark.asyncio
async def test_count_messages(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).fetchval.return_value = 7

    assert await repository.count_messages(str(uuid4())) == 7


# ============================================================================
# Preferences and organizations
# ============================================================================


@pytest.mark.asyncio
async def test_get_preferences_missing(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).fetchrow.return_value = None

    assert await repository.get_preferences("user-1") is None


@pytest.mark.asyncio
async def test_get_preferences_parses_document(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).fetchrow.return_value = {
        "user_id": "user-1",
        "document": json.dumps({"theme": "dark", "ai": {"response_style": "concise"}}),
        "updated_at": NOW,
    }

    preferences = await repository.get_preferences("user-1")

    assert preferences is not None
    assert preferences.theme == "dark"
    assert preferences.ai.response_style == "concise"
    assert preferences.language == "en"


@pytest.mark.asyncio
async def test_upsert_preferences(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    preferences = UserPreferences(user_id="user-1", theme="dark", updated_at=NOW)
    conn = _conn(mock_db_pool)
    conn.fetchrow.return_value = {
        "user_id": "user-1",
        "document": preferences.model_dump(mode="json", exclude={"user_id", "updated_at"}),
        "updated_at": NOW,
    }

    stored = await repository.upsert_preferences(preferences)

    query, user_id, document, updated_at = conn.fetchrow.call_args[0]
    assert "ON CONFLICT (user_id)" in query
    assert user_id == "user-1"
    assert json.loads(document)["theme"] == "dark"
    assert "user_id" not in json.loads(document)
    assert stored == preferences


@pytest.mark.asyncio
async def test_get_organization_with_ai_config(repository: ConversationRepository, mock_db_pool: MagicMock) -> None:
    _conn(mock_db_pool).fetchrow.return_value = {
        "id": "org-1",
        "name": "Acme",
        "slug": "acme",
        "is_active": True,
        "ai_config": json.dumps({"endpoint": "https://acme.openai.azure.com/", "model_deployment": "gpt-4o-mini"}),
    }

    organization = await repository.get_organization("org-1")

    assert organization is not None
    assert organization.ai_config is not None
    assert organization.ai_config.endpoint == "https://acme.openai.azure.com/"
    assert organization.ai_config.model_deployment == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_get_organization_without_ai_config(
    repository: ConversationRepository, mock_db_pool: MagicMock
) -> None:
    _conn(mock_db_pool).fetchrow.return_value = {
        "id": "org-2",
        "name": "Globex",
        "slug": None,
        "is_active": False,
        "ai_config": None,
    }

    organization = await repository.get_organization("org-2")

    assert organization is not None
    assert organization.ai_config is None
    assert organization.is_active is False
