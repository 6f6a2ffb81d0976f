from __future__ import annotations

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.services.thread_state import (
    ConversationEmbeddedThreadStateStore,
    InMemoryThreadStateStore,
    RedisThreadStateStore,
    create_thread_state_store,
)
from models.conversation_models import ThreadBinding


def _binding(clock: Any, conversation_id: str = "conv-1", hours: int = 24) -> ThreadBinding:
    return ThreadBinding.create(conversation_id, f"thread_{conversation_id}", now=clock(), ttl=timedelta(hours=hours))


# ============================================================================
# In-memory store
# ============================================================================


@pytest.mark.asyncio
async def test_memory_store_roundtrip(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    binding = _binding(clock)

    await store.set(binding)

    assert await store.get("conv-1") == binding
    assert await store.exists("conv-1") is True
    assert await store.get("conv-2") is None


@pytest.mark.asyncio
async def test_memory_store_expires_on_wall_clock(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    await store.set(_binding(clock))

    clock.advance(hours=24)

    assert await store.get("conv-1") is None
    assert await store.exists("conv-1") is False
    assert len(store._cache) == 0


@pytest.mark.asyncio
async def test_memory_store_last_writer_wins(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    await store.set(_binding(clock))
    replacement = ThreadBinding.create("conv-1", "thread_other", now=clock())

    await store.set(replacement)

    stored = await store.get("conv-1")
    assert stored is not None
    assert stored.thread_id == "thread_other"


@pytest.mark.asyncio
async def test_memory_store_remove(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    await store.set(_binding(clock))

    await store.remove("conv-1")
    await store.remove("conv-1")

    assert await store.get("conv-1") is None


@pytest.mark.asyncio
async def test_memory_store_is_bounded(clock: Any) -> None:
    store = InMemoryThreadStateStore(max_size=2, clock=clock)
    for conversation_id in ("a", "b", "c"):
        await store.set(_binding(clock, conversation_id))

    assert await store.get("a") is None
    assert await store.get("c") is not None
    assert store.stats()["size"] == 2
    assert store.stats()["backend"] == "memory"


@pytest.mark.asyncio
async def test_memory_store_skips_already_expired_binding(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    stale = ThreadBinding.create("conv-1", "thread_old", now=clock() - timedelta(hours=30))

    await store.set(stale)

    assert await store.get("conv-1") is None


@pytest.mark.asyncio
async def test_inactive_binding_does_not_exist(clock: Any) -> None:
    store = InMemoryThreadStateStore(clock=clock)
    binding = _binding(clock).model_copy(update={"is_active": False})
    await store.set(binding)

    assert await store.get("conv-1") is not None
    assert await store.exists("conv-1") is False


# ============================================================================
# Redis store
# ============================================================================


@pytest.fixture
def redis_client() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client


@pytest.mark.asyncio
async def test_redis_store_set_uses_expiry(redis_client: MagicMock, clock: Any) -> None:
    store = RedisThreadStateStore(redis_client, key_prefix="thread:", clock=clock)
    binding = _binding(clock)

    await store.set(binding)

    redis_client.set.assert_awaited_once()
    args, kwargs = redis_client.set.call_args
    assert args[0] == "thread:conv-1"
    assert ThreadBinding.model_validate_json(args[1]) == binding
    assert kwargs["ex"] == 24 * 3600


@pytest.mark.asyncio
async def test_redis_store_get_parses_binding(redis_client: MagicMock, clock: Any) -> None:
    binding = _binding(clock)
    redis_client.get.return_value = binding.model_dump_json()
    store = RedisThreadStateStore(redis_client, clock=clock)

    assert await store.get("conv-1") == binding
    redis_client.get.assert_awaited_once_with("thread:conv-1")


@pytest.mark.asyncio
async def test_redis_store_drops_expired_binding(redis_client: MagicMock, clock: Any) -> None:
    redis_client.get.return_value = _binding(clock).model_dump_json()
    store = RedisThreadStateStore(redis_client, clock=clock)
    clock.advance(hours=25)

    assert await store.get("conv-1") is None
    redis_client.delete.assert_awaited_once_with("thread:conv-1")


@pytest.mark.asyncio
async def test_redis_store_discards_unreadable_value(redis_client: MagicMock, clock: Any) -> None:
    redis_client.get.return_value = '{"not": "a binding"}'
    store = RedisThreadStateStore(redis_client, clock=clock)

    assert await store.get("conv-1") is None
    redis_client.delete.assert_awaited_once_with("thread:conv-1")


@pytest.mark.asyncio
async def test_redis_store_fails_open_on_read(redis_client: MagicMock, clock: Any) -> None:
    redis_client.get.side_effect = ConnectionError("redis down")
    store = RedisThreadStateStore(redis_client, clock=clock)

    assert await store.get("conv-1") is None


@pytest.mark.asyncio
async def test_redis_store_write_failure_raises(redis_client: MagicMock, clock: Any) -> None:
    redis_client.set.side_effect = ConnectionError("redis down")
    store = RedisThreadStateStore(redis_client, clock=clock)

    with pytest.raises(ConnectionError):
        await store.set(_binding(clock))


@pytest.mark.asyncio
async def test_redis_store_expired_set_deletes(redis_client: MagicMock, clock: Any) -> None:
    store = RedisThreadStateStore(redis_client, clock=clock)
    stale = ThreadBinding.create("conv-1", "thread_old", now=clock() - timedelta(hours=30))

    await store.set(stale)

    redis_client.set.assert_not_awaited()
    redis_client.delete.assert_awaited_once_with("thread:conv-1")


@pytest.mark.asyncio
async def test_redis_store_remove_swallows_errors(redis_client: MagicMock) -> None:
    redis_client.delete.side_effect = ConnectionError("redis down")
    store = RedisThreadStateStore(redis_client)

    await store.remove("conv-1")


@pytest.mark.asyncio
async def test_redis_store_ping_and_close(redis_client: MagicMock) -> None:
    store = RedisThreadStateStore(redis_client)

    assert await store.ping() is True
    await store.close()

    redis_client.aclose.assert_awaited_once()
    assert store.stats() == {"backend": "redis", "key_prefix": "thread:"}


# ============================================================================
# Conversation-embedded store
# ============================================================================


@pytest.mark.asyncio
async def test_embedded_store_is_noop(clock: Any) -> None:
    store = ConversationEmbeddedThreadStateStore(clock=clock)

    await store.set(_binding(clock))

    assert store.embedded_in_conversation is True
    assert await store.get("conv-1") is None
    assert await store.exists("conv-1") is False
    await store.remove("conv-1")


# ============================================================================
# Factory
# ============================================================================


def _settings(backend: str) -> MagicMock:
    settings = MagicMock()
    settings.thread_state_backend = backend
    settings.thread_cache_max_size = 10
    settings.thread_state_key_prefix = "chat:"
    settings.redis_url = "redis://localhost:6379/0"
    return settings


def test_factory_memory() -> None:
    store = create_thread_state_store(_settings("memory"))
    assert isinstance(store, InMemoryThreadStateStore)
    assert store.stats()["max_size"] == 10


def test_factory_conversation() -> None:
    assert isinstance(create_thread_state_store(_settings("conversation")), ConversationEmbeddedThreadStateStore)


def test_factory_redis_with_client(redis_client: MagicMock) -> None:
    store = create_thread_state_store(_settings("redis"), redis_client=redis_client)
    assert isinstance(store, RedisThreadStateStore)
    assert store._key("abc") == "chat:abc"


def test_factory_unknown_backend() -> None:
    with pytest.raises(ValueError, match="Unknown thread state backend"):
        create_thread_state_store(_settings("memcached"))
