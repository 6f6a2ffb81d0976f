"""
Interrupting a streaming send.

The chat socket creates one CancellationToken per send and hands it to
ConversationOrchestrator.send_message_streaming. A user interrupt, a newer
message on the same socket, or a disconnect calls cancel(); the task that is
iterating the agent stream inside cancellation_scope() is then cancelled at
its next await.
"""

from __future__ import annotations

import asyncio
import contextlib

from collections.abc import AsyncIterator

from utils.logger import logger


class CancellationToken:
    """One-shot interrupt flag for a single send.

    Usage:
        token = CancellationToken()

        # chat socket, on {"type": "interrupt"}:
        await token.cancel("user interrupt")

        # orchestrator, around the agent stream:
        async with token.cancellation_scope():
            async for event in gateway.run_streaming(...):
                ...
    """

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cancel_reason(self) -> str | None:
        """Reason given by the first cancel() call."""
        return self._reason

    async def cancel(self, reason: str | None = None) -> bool:
        """Interrupt the send. Later calls keep the first reason.

        Args:
            reason: Why the send was interrupted, reported back to the client

        Returns:
            True if this call cancelled the token, False if it already was
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        logger.debug(f"Send cancelled: {reason or 'no reason given'}")
        return True

    @contextlib.asynccontextmanager
    async def cancellation_scope(self) -> AsyncIterator[None]:
        """Cancel the enclosing task when the token fires inside the scope.

        Raises:
            asyncio.CancelledError: If the token fired before or during the scope
        """
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "Cancelled before scope entry")

        task = asyncio.current_task()

        async def interrupt_on_cancel() -> None:
            await self._event.wait()
            if task is not None and not task.done():
                task.cancel()

        watcher = asyncio.create_task(interrupt_on_cancel())
        try:
            yield
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        # Fired after the body's last await
        if self.is_cancelled:
            raise asyncio.CancelledError(self._reason or "Cancelled during scope")


__all__ = ["CancellationToken"]
