"""
Thread state stores: conversation id -> active ThreadBinding.

Three backends share one contract:

- InMemoryThreadStateStore: bounded LRU/TTL map in this process.
- RedisThreadStateStore: shared cache with native per-key expiry.
- ConversationEmbeddedThreadStateStore: no-op; the binding lives on the
  Conversation document and the orchestrator carries it there.

An expired binding is always reported as absent.
"""

from __future__ import annotations

import math

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from core.constants import THREAD_CACHE_MAX_SIZE, THREAD_STATE_KEY_PREFIX, Settings
from models.conversation_models import ThreadBinding, utc_now
from utils.cache import TTLCache
from utils.logger import logger

if TYPE_CHECKING:
    from redis.asyncio import Redis

Clock = Callable[[], datetime]


class ThreadStateStore(ABC):
    """Pluggable store for conversation thread bindings."""

    #: True when the Conversation record, not this store, is authoritative
    embedded_in_conversation = False

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or utc_now

    @abstractmethod
    async def get(self, conversation_id: str) -> ThreadBinding | None:
        """Look up the binding for a conversation.

        Args:
            conversation_id: Conversation to look up

        Returns:
            The binding if present and not expired, otherwise None. Expired
            bindings are dropped as a side effect.
        """

    @abstractmethod
    async def set(self, binding: ThreadBinding) -> None:
        """Store a binding, replacing any existing one (last writer wins).

        Args:
            binding: Binding to store; its expires_at bounds how long it is kept
        """

    @abstractmethod
    async def remove(self, conversation_id: str) -> None:
        """Forget the binding for a conversation."""

    async def exists(self, conversation_id: str) -> bool:
        binding = await self.get(conversation_id)
        return binding is not None and binding.is_active

    async def ping(self) -> bool:
        """Report whether the backend is reachable."""
        return True

    def stats(self) -> dict[str, Any]:
        return {"backend": type(self).__name__}

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryThreadStateStore(ThreadStateStore):
    """Process-local bindings, lost on restart.

    Backed by TTLCache, so reads and writes are serialized by its asyncio.Lock
    and the map never grows past max_size.
    """

    def __init__(self, max_size: int = THREAD_CACHE_MAX_SIZE, clock: Clock | None = None) -> None:
        super().__init__(clock)
        self._cache = TTLCache(max_size=max_size)

    async def get(self, conversation_id: str) -> ThreadBinding | None:
        binding: ThreadBinding | None = await self._cache.get(conversation_id)
        if binding is None:
            return None

        # Wall-clock check; the cache TTL is monotonic and only approximates expires_at
        if binding.is_expired(self._clock()):
            logger.debug(f"Thread binding for conversation {conversation_id} expired, evicting")
            await self._cache.delete(conversation_id)
            return None
        return binding

    async def set(self, binding: ThreadBinding) -> None:
        ttl = (binding.expires_at - self._clock()).total_seconds()
        await self._cache.set(binding.conversation_id, binding, ttl=ttl)
        logger.debug(f"Stored thread binding {binding.thread_id} for conversation {binding.conversation_id}")

    async def remove(self, conversation_id: str) -> None:
        if await self._cache.delete(conversation_id):
            logger.debug(f"Removed thread binding for conversation {conversation_id}")

    def stats(self) -> dict[str, Any]:
        return {"backend": "memory", **self._cache.stats()}


class RedisThreadStateStore(ThreadStateStore):
    """Bindings shared across instances through Redis.

    Values are the binding serialized as flat JSON under "{prefix}{conversation_id}"
    with an expiry matching expires_at. Reads fail open: if Redis is unavailable
    the caller sees no binding and starts a new thread instead of blocking.
    """

    def __init__(
        self,
        client: Redis,
        key_prefix: str = THREAD_STATE_KEY_PREFIX,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(clock)
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, conversation_id: str) -> str:
        return f"{self._key_prefix}{conversation_id}"

    async def get(self, conversation_id: str) -> ThreadBinding | None:
        key = self._key(conversation_id)
        try:
            raw = await self._client.get(key)
            if raw is None:
                return None

            binding = ThreadBinding.model_validate_json(raw)
            if binding.is_expired(self._clock()):
                await self._client.delete(key)
                return None
            return binding
        except ValidationError as e:
            logger.warning(f"Discarding unreadable thread binding for conversation {conversation_id}: {e}")
            await self.remove(conversation_id)
            return None
        except Exception as e:
            logger.warning(f"Thread state lookup failed for conversation {conversation_id}: {e}")
            return None

    async def set(self, binding: ThreadBinding) -> None:
        key = self._key(binding.conversation_id)
        ttl_seconds = math.ceil((binding.expires_at - self._clock()).total_seconds())
        try:
            if ttl_seconds <= 0:
                await self._client.delete(key)
                return
            await self._client.set(key, binding.model_dump_json(), ex=ttl_seconds)
        except Exception as e:
            logger.error(f"Failed to store thread binding for conversation {binding.conversation_id}: {e}")
            raise

    async def remove(self, conversation_id: str) -> None:
        try:
            await self._client.delete(self._key(conversation_id))
        except Exception as e:
            logger.warning(f"Failed to remove thread binding for conversation {conversation_id}: {e}")

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    def stats(self) -> dict[str, Any]:
        return {"backend": "redis", "key_prefix": self._key_prefix}

    async def close(self) -> None:
        await self._client.aclose()


class ConversationEmbeddedThreadStateStore(ThreadStateStore):
    """Store used when bindings are persisted on the Conversation document.

    Every operation is a no-op here; the orchestrator reads and writes
    Conversation.thread_binding directly.
    """

    embedded_in_conversation = True

    async def get(self, conversation_id: str) -> ThreadBinding | None:
        logger.debug(f"Thread binding for {conversation_id} is read from the conversation record")
        return None

    async def set(self, binding: ThreadBinding) -> None:
        logger.debug(f"Thread binding for {binding.conversation_id} is written with the conversation record")

    async def remove(self, conversation_id: str) -> None:
        logger.debug(f"Thread binding for {conversation_id} is cleared with the conversation record")

    async def exists(self, conversation_id: str) -> bool:
        return False

    def stats(self) -> dict[str, Any]:
        return {"backend": "conversation"}


def create_thread_state_store(settings: Settings, redis_client: Redis | None = None) -> ThreadStateStore:
    """Build the thread state store selected by settings.thread_state_backend.

    Args:
        settings: Application settings
        redis_client: Client to reuse for the redis backend; one is created
            from settings.redis_url when omitted

    Returns:
        A store for "memory", "redis" or "conversation"

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = settings.thread_state_backend

    if backend == "redis":
        if redis_client is None:
            from redis.asyncio import Redis

            redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
        logger.info(f"Thread state backend: redis (prefix {settings.thread_state_key_prefix!r})")
        return RedisThreadStateStore(redis_client, key_prefix=settings.thread_state_key_prefix)

    if backend == "conversation":
        logger.info("Thread state backend: conversation record")
        return ConversationEmbeddedThreadStateStore()

    if backend == "memory":
        logger.info(f"Thread state backend: memory (max {settings.thread_cache_max_size})")
        return InMemoryThreadStateStore(max_size=settings.thread_cache_max_size)

    raise ValueError(f"Unknown thread state backend: {backend}")
