"""
Conversation orchestrator: the send pipeline and conversation CRUD.

send_message_streaming() walks one user message through

    validate -> authorize -> sanitize -> persist user message -> update metadata
    -> context window -> resolve thread -> stream -> persist assistant message

and yields ResponseChunks. Every path ends with exactly one chunk where
is_complete is True. Streaming runs in a producer task that feeds an
asyncio.Queue, so storage latency after the last delta never holds back
chunks the caller has not read yet.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import weakref

from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta

from api.services.context_window import ContextWindowPolicy
from api.services.conversation_repository import ConversationRepository
from api.services.sanitization import MessageSanitizer
from api.services.thread_state import ThreadStateStore
from api.websocket.task_manager import CancellationToken
from core.constants import (
    AGENT_ERROR_APOLOGY,
    DEFAULT_CONVERSATION_TITLE,
    ERROR_CONVERSATION_ACCESS,
    ERROR_EMPTY_MESSAGE,
    ERROR_MESSAGE_TOO_LONG,
    ERROR_RESPONSE_CANCELLED,
    ERROR_SAVE_MESSAGE,
    ERROR_TITLE_EMPTY,
    ERROR_UPDATE_CONVERSATION,
    ConversationLimits,
)
from integrations.agent_gateway import AgentGateway, AgentGatewayRegistry, ThreadHandle
from models.conversation_models import (
    Conversation,
    Message,
    MessageMetadata,
    MessageRole,
    ResponseChunk,
    ThreadBinding,
    new_id,
    utc_now,
)
from utils.logger import logger
from utils.metrics import (
    ai_response_duration_seconds,
    context_tokens_estimated,
    context_trims_total,
    conversation_events_total,
    messages_received_total,
    messages_sent_total,
    orchestrator_errors_total,
    prompt_injection_attempts_total,
    thread_bindings_total,
)

Clock = Callable[[], datetime]
Emit = Callable[[ResponseChunk], None]


class ConversationOrchestrator:
    """Coordinates storage, thread state and the agent for each conversation turn."""

    def __init__(
        self,
        repository: ConversationRepository,
        thread_store: ThreadStateStore,
        gateways: AgentGatewayRegistry,
        context_policy: ContextWindowPolicy | None = None,
        sanitizer: MessageSanitizer | None = None,
        limits: ConversationLimits | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.thread_store = thread_store
        self.gateways = gateways
        self.limits = limits or ConversationLimits()
        self.context_policy = context_policy or ContextWindowPolicy()
        self.sanitizer = sanitizer or MessageSanitizer(hard_limit=self.limits.message_hard_limit)
        self._clock = clock or utc_now
        # Entries disappear once no send holds the lock
        self._send_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Send pipeline
    # ------------------------------------------------------------------

    async def send_message_streaming(
        self,
        conversation_id: str,
        user_id: str,
        message: str,
        cancellation_token: CancellationToken | None = None,
    ) -> AsyncIterator[ResponseChunk]:
        """Send a user message and stream the assistant's reply.

        Closing the iterator early (or cancelling the consuming task) cancels
        the in-flight agent run and nothing further is persisted for it.

        Args:
            conversation_id: Target conversation
            user_id: Caller; must own the conversation
            message: Raw user text, validated and sanitized here
            cancellation_token: Interrupts the agent stream when cancelled

        Yields:
            Text chunks followed by exactly one chunk with is_complete=True.
            Rejections and failures arrive as that terminal chunk with error
            set; nothing is raised to the caller.
        """
        error = self._validate_message(message)
        if error is not None:
            messages_sent_total.labels(status="rejected").inc()
            yield ResponseChunk.failure(error)
            return

        queue: asyncio.Queue[ResponseChunk] = asyncio.Queue()
        producer = asyncio.create_task(
            self._produce(conversation_id, user_id, message, queue.put_nowait, cancellation_token)
        )

        try:
            while True:
                chunk = await queue.get()
                yield chunk
                if chunk.is_complete:
                    break
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    def _validate_message(self, message: str | None) -> str | None:
        if not message or not message.strip():
            return ERROR_EMPTY_MESSAGE
        if len(message) > self.limits.max_message_length:
            return ERROR_MESSAGE_TOO_LONG.format(max_length=self.limits.max_message_length)
        return None

    def _send_lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._send_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._send_locks[conversation_id] = lock
        return lock

    async def _produce(
        self,
        conversation_id: str,
        user_id: str,
        message: str,
        emit: Emit,
        cancellation_token: CancellationToken | None,
    ) -> None:
        try:
            if self.limits.serialize_sends:
                lock = self._send_lock(conversation_id)
                async with lock:
                    await self._process_message(conversation_id, user_id, message, emit, cancellation_token)
            else:
                await self._process_message(conversation_id, user_id, message, emit, cancellation_token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error sending message to conversation {conversation_id}: {e}", exc_info=True)
            orchestrator_errors_total.labels(stage="unexpected").inc()
            emit(ResponseChunk.failure(str(e)))

    async def _process_message(
        self,
        conversation_id: str,
        user_id: str,
        message: str,
        emit: Emit,
        cancellation_token: CancellationToken | None,
    ) -> None:
        conversation = await self._authorize(conversation_id, user_id)
        if conversation is None:
            messages_sent_total.labels(status="rejected").inc()
            emit(ResponseChunk.failure(ERROR_CONVERSATION_ACCESS))
            return

        content = self._sanitize(conversation_id, message)
        if not content:
            messages_sent_total.labels(status="rejected").inc()
            emit(ResponseChunk.failure(ERROR_EMPTY_MESSAGE))
            return

        now = self._clock()
        user_message = Message(
            conversation_id=conversation_id,
            user_id=user_id,
            role=MessageRole.USER,
            content=content,
            timestamp=now,
        )
        try:
            await self.repository.save_message(user_message)
        except Exception as e:
            logger.error(f"Failed to save user message for conversation {conversation_id}: {e}", exc_info=True)
            orchestrator_errors_total.labels(stage="save_user_message").inc()
            messages_sent_total.labels(status="save_failed").inc()
            emit(ResponseChunk.failure(ERROR_SAVE_MESSAGE))
            return

        updates: dict[str, object] = {"message_count": conversation.message_count + 1, "updated_at": now}
        if conversation.message_count == 0 and conversation.title == DEFAULT_CONVERSATION_TITLE:
            updates["title"] = self.sanitizer.sanitize_title(content, self.limits.title_max_length)
        conversation = conversation.model_copy(update=updates)
        try:
            await self.repository.update_conversation(conversation)
        except Exception as e:
            logger.error(f"Failed to update conversation {conversation_id}: {e}", exc_info=True)
            orchestrator_errors_total.labels(stage="update_conversation").inc()
            messages_sent_total.labels(status="save_failed").inc()
            emit(ResponseChunk.failure(ERROR_UPDATE_CONVERSATION))
            return

        messages_sent_total.labels(status="accepted").inc()
        await self._check_context_window(conversation_id)
        await self._stream_response(conversation, user_id, content, emit, cancellation_token)

    async def _authorize(self, conversation_id: str, user_id: str) -> Conversation | None:
        try:
            conversation = await self.repository.get_conversation(conversation_id)
        except Exception as e:
            logger.error(f"Failed to load conversation {conversation_id}: {e}", exc_info=True)
            orchestrator_errors_total.labels(stage="authorize").inc()
            return None

        if conversation is None or not conversation.is_owned_by(user_id):
            logger.warning(f"Conversation {conversation_id} not found or not owned by user {user_id}")
            return None
        return conversation

    def _sanitize(self, conversation_id: str, message: str) -> str:
        content = self.sanitizer.sanitize(message)
        pattern = self.sanitizer.detect_prompt_injection(content)
        if pattern is not None:
            logger.warning(f"Possible prompt injection in conversation {conversation_id}: matched {pattern!r}")
            prompt_injection_attempts_total.inc()
        return content

    async def _check_context_window(self, conversation_id: str) -> None:
        """Measure stored history against the token budget.

        The agent thread carries its own context, so this only reports what a
        trimmed history would keep; the agent still receives just the new message.
        """
        try:
            history = await self.repository.get_messages(conversation_id, limit=self.limits.history_load_limit)
        except Exception as e:
            logger.warning(f"Skipping context window check for conversation {conversation_id}: {e}")
            return

        policy = self.context_policy
        if not policy.exceeds_limit(history, self.limits.context_token_budget):
            context_tokens_estimated.observe(policy.estimate_tokens(history))
            return

        kept = policy.trim(history, self.limits.context_trim_target)
        kept_ids = {m.id for m in kept}
        dropped = [m for m in history if m.id not in kept_ids]
        kept_tokens = policy.estimate_tokens(kept)
        context_trims_total.inc()
        context_tokens_estimated.observe(kept_tokens)
        logger.info(
            f"Context window for conversation {conversation_id}: kept {len(kept)}, dropped {len(dropped)} "
            f"(~{kept_tokens} tokens) {policy.summarize(dropped)}"
        )

    async def _resolve_thread(
        self,
        conversation: Conversation,
        gateway: AgentGateway,
        now: datetime,
    ) -> tuple[ThreadHandle, ThreadBinding, bool]:
        """Find or create the thread for a conversation. Returns (handle, binding, is_new)."""
        binding = await self._current_binding(conversation)

        if binding is not None and not binding.is_valid(now):
            logger.info(f"Thread binding {binding.thread_id} for conversation {conversation.id} expired")
            thread_bindings_total.labels(outcome="expired").inc()
            await self.thread_store.remove(conversation.id)
            binding = None

        if binding is not None:
            handle = await gateway.get_thread(binding.thread_id)
            if handle is not None:
                thread_bindings_total.labels(outcome="reused").inc()
                return handle, binding, False

            logger.warning(
                f"Thread {binding.thread_id} for conversation {conversation.id} is not live on this instance, "
                "context will be lost"
            )
            thread_bindings_total.labels(outcome="lost").inc()
        else:
            thread_bindings_total.labels(outcome="created").inc()

        handle = await gateway.new_thread(conversation.id, now=now)
        binding = ThreadBinding.create(
            conversation.id,
            handle.thread_id,
            now=now,
            ttl=timedelta(hours=self.limits.thread_ttl_hours),
        )
        return handle, binding, True

    async def _current_binding(self, conversation: Conversation) -> ThreadBinding | None:
        binding = None
        if not self.thread_store.embedded_in_conversation:
            binding = await self.thread_store.get(conversation.id)
        return binding or conversation.thread_binding

    async def _stream_response(
        self,
        conversation: Conversation,
        user_id: str,
        content: str,
        emit: Emit,
        cancellation_token: CancellationToken | None,
    ) -> None:
        message_id = new_id()
        parts: list[str] = []
        started = time.perf_counter()
        gateway: AgentGateway | None = None
        # Set only while a thread created by this send is not yet bound
        unbound_thread_id: str | None = None

        try:
            scope = cancellation_token.cancellation_scope() if cancellation_token else contextlib.nullcontext()
            async with scope:
                gateway = await self.gateways.resolve(conversation.organization_id)
                handle, binding, is_new = await self._resolve_thread(conversation, gateway, self._clock())
                if is_new:
                    unbound_thread_id = handle.thread_id
                async for delta in gateway.run_streaming(handle, content):
                    parts.append(delta)
                    emit(ResponseChunk(content=delta, message_id=message_id))
        except asyncio.CancelledError:
            if cancellation_token is None or not cancellation_token.is_cancelled:
                raise
            logger.info(
                f"Response cancelled for conversation {conversation.id}: {cancellation_token.cancel_reason or 'no reason'}"
            )
            await self._release_unbound_thread(gateway, unbound_thread_id)
            messages_received_total.labels(status="cancelled").inc()
            emit(ResponseChunk.failure(ERROR_RESPONSE_CANCELLED, message_id=message_id))
            return
        except Exception as e:
            await self._release_unbound_thread(gateway, unbound_thread_id)
            await self._handle_agent_failure(e, conversation, user_id, message_id, gateway, emit)
            return

        duration = time.perf_counter() - started
        ai_response_duration_seconds.observe(duration)
        response_text = "".join(parts)

        if is_new:
            try:
                await self.thread_store.set(binding)
            except Exception as e:
                logger.error(f"Failed to store thread binding for conversation {conversation.id}: {e}")
                orchestrator_errors_total.labels(stage="store_binding").inc()
            conversation = conversation.model_copy(update={"thread_binding": binding})

        tokens_used = self.context_policy.estimate_tokens(
            [Message(conversation_id=conversation.id, user_id=user_id, role=MessageRole.ASSISTANT, content=response_text)]
        )
        assistant_message = Message(
            id=message_id,
            conversation_id=conversation.id,
            user_id=user_id,
            role=MessageRole.ASSISTANT,
            content=response_text,
            timestamp=self._clock(),
            metadata=MessageMetadata(
                tokens_used=tokens_used,
                model_name=gateway.model_name,
                response_time_ms=duration * 1000,
            ),
        )

        was_saved = await self._save_assistant_message(conversation, assistant_message)
        messages_received_total.labels(status="completed").inc()
        emit(ResponseChunk(message_id=message_id, is_complete=True, was_saved=was_saved))

        logger.log_exchange(
            user_input=content,
            response=response_text,
            conversation_id=conversation.id,
            duration_ms=duration * 1000,
            tokens_used=tokens_used,
            was_saved=was_saved,
        )

    async def _release_unbound_thread(self, gateway: AgentGateway | None, thread_id: str | None) -> None:
        """Drop a thread this send created but never bound, so the next send starts clean."""
        if gateway is None or thread_id is None:
            return
        try:
            await gateway.release_thread(thread_id)
        except Exception as e:
            logger.warning(f"Failed to release unbound thread {thread_id}: {e}")
            orchestrator_errors_total.labels(stage="release_thread").inc()

    async def _save_assistant_message(self, conversation: Conversation, message: Message) -> bool:
        """Persist an assistant message and bump the conversation. Failures are logged, not raised."""
        was_saved = True
        try:
            await self.repository.save_message(message)
        except Exception as e:
            logger.error(f"Failed to save assistant message for conversation {conversation.id}: {e}")
            orchestrator_errors_total.labels(stage="save_assistant_message").inc()
            was_saved = False

        updates: dict[str, object] = {"updated_at": self._clock()}
        if was_saved:
            updates["message_count"] = conversation.message_count + 1
        try:
            await self.repository.update_conversation(conversation.model_copy(update=updates))
        except Exception as e:
            logger.error(f"Failed to update conversation {conversation.id} after response: {e}")
            orchestrator_errors_total.labels(stage="update_conversation").inc()
        return was_saved

    async def _handle_agent_failure(
        self,
        error: Exception,
        conversation: Conversation,
        user_id: str,
        message_id: str,
        gateway: AgentGateway | None,
        emit: Emit,
    ) -> None:
        logger.error(f"Agent error in conversation {conversation.id}: {error}", exc_info=True)
        orchestrator_errors_total.labels(stage="agent").inc()
        messages_received_total.labels(status="failed").inc()

        apology = Message(
            id=message_id,
            conversation_id=conversation.id,
            user_id=user_id,
            role=MessageRole.ASSISTANT,
            content=AGENT_ERROR_APOLOGY,
            timestamp=self._clock(),
            metadata=MessageMetadata(
                model_name=gateway.model_name if gateway else None,
                error=str(error),
            ),
        )
        was_saved = await self._save_assistant_message(conversation, apology)
        emit(
            ResponseChunk(
                content=AGENT_ERROR_APOLOGY,
                message_id=message_id,
                is_complete=True,
                error=str(error),
                was_saved=was_saved,
            )
        )

    # ------------------------------------------------------------------
    # Conversation CRUD
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        user_id: str,
        organization_id: str | None = None,
        title: str | None = None,
    ) -> Conversation:
        """Create an empty conversation.

        Args:
            user_id: Owner
            organization_id: Tenant whose agent serves the conversation, None for the global agent
            title: Optional title; sanitized, and replaced by the first message when left empty

        Returns:
            The stored conversation
        """
        clean_title = self.sanitizer.sanitize_title(title, self.limits.title_max_length) if title else ""
        now = self._clock()
        conversation = Conversation(
            user_id=user_id,
            organization_id=organization_id,
            title=clean_title or DEFAULT_CONVERSATION_TITLE,
            created_at=now,
            updated_at=now,
        )
        created = await self.repository.create_conversation(conversation)
        conversation_events_total.labels(event="created").inc()
        logger.info(f"Created conversation {created.id} for user {user_id}")
        return created

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        """Return the conversation if it exists, is not deleted and belongs to user_id."""
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None or not conversation.is_owned_by(user_id):
            return None
        return conversation

    async def list_conversations(self, user_id: str, limit: int | None = None) -> list[Conversation]:
        max_limit = self.limits.list_limit
        limit = max_limit if limit is None else max(1, min(limit, max_limit))
        return await self.repository.list_conversations(user_id, limit=limit)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Soft-delete a conversation and its messages, and drop its agent thread.

        Returns:
            False if the conversation is missing, already deleted, or not owned by user_id
        """
        conversation = await self.get_conversation(conversation_id, user_id)
        if conversation is None:
            return False

        if not await self.repository.soft_delete_conversation(conversation_id, user_id):
            return False

        await self._clear_thread(conversation)
        conversation_events_total.labels(event="deleted").inc()
        logger.info(f"Deleted conversation {conversation_id}")
        return True

    async def _clear_thread(self, conversation: Conversation) -> None:
        binding = await self._current_binding(conversation)
        await self.thread_store.remove(conversation.id)
        if binding is None:
            return

        try:
            gateway = await self.gateways.resolve(conversation.organization_id)
            await gateway.release_thread(binding.thread_id)
        except Exception as e:
            logger.warning(f"Failed to release thread {binding.thread_id}: {e}")

    async def update_title(self, conversation_id: str, user_id: str, title: str) -> Conversation | None:
        """Rename a conversation.

        Returns:
            The updated conversation, or None if it is not accessible to user_id

        Raises:
            ValueError: If the title is empty after sanitization
        """
        clean_title = self.sanitizer.sanitize_title(title, self.limits.title_max_length)
        if not clean_title:
            raise ValueError(ERROR_TITLE_EMPTY)

        conversation = await self.get_conversation(conversation_id, user_id)
        if conversation is None:
            return None

        updated = conversation.model_copy(update={"title": clean_title, "updated_at": self._clock()})
        await self.repository.update_conversation(updated)
        conversation_events_total.labels(event="renamed").inc()
        return updated

    async def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: int | None = None,
    ) -> list[Message] | None:
        """Return recent messages oldest-first, or None if the conversation is not accessible."""
        conversation = await self.get_conversation(conversation_id, user_id)
        if conversation is None:
            return None

        max_limit = self.limits.history_load_limit
        limit = max_limit if limit is None else max(1, min(limit, max_limit))
        return await self.repository.get_messages(conversation_id, limit=limit)

    async def resume_conversation(self, conversation_id: str, user_id: str) -> ThreadBinding | None:
        """Return the live thread binding if the agent thread is still held on this instance.

        Nothing is rehydrated from storage: a stored id without a live handle
        is reported as not resumable and the next send starts a new thread.

        Raises:
            AgentConfigurationError: If the organization's agent cannot be started
        """
        conversation = await self.get_conversation(conversation_id, user_id)
        if conversation is None:
            return None

        binding = await self._current_binding(conversation)
        if binding is None or not binding.is_valid(self._clock()):
            logger.info(f"Conversation {conversation_id} has no active thread to resume")
            return None

        gateway = await self.gateways.resolve(conversation.organization_id)
        if await gateway.get_thread(binding.thread_id) is None:
            logger.info(f"Thread {binding.thread_id} is not live on this instance, cannot resume")
            return None

        conversation_events_total.labels(event="resumed").inc()
        logger.info(f"Resumed conversation {conversation_id} on thread {binding.thread_id}")
        return binding
