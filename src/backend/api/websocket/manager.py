from __future__ import annotations

import asyncio
import contextlib
import time

from typing import Any

from fastapi import WebSocket

from utils.logger import logger
from utils.metrics import ws_connections_active


class WebSocketManager:
    """Track chat WebSocket connections per conversation with idle timeout and connection limits."""

    def __init__(
        self,
        idle_timeout_seconds: float = 600.0,
        max_connections: int = 500,
        max_connections_per_conversation: int = 3,
    ) -> None:
        self.connections: dict[str, set[WebSocket]] = {}
        self.last_activity: dict[WebSocket, float] = {}
        self.idle_timeout = idle_timeout_seconds
        self.max_connections = max_connections
        self.max_connections_per_conversation = max_connections_per_conversation
        self._lock = asyncio.Lock()
        self._idle_checker_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    async def connect(self, websocket: WebSocket, conversation_id: str) -> bool:
        """Accept and register a connection.

        Returns:
            False if rejected (limits reached or shutting down); the socket is not accepted
        """
        async with self._lock:
            if self._shutting_down:
                logger.warning(f"Rejecting connection during shutdown for conversation {conversation_id}")
                return False

            if self.connection_count >= self.max_connections:
                logger.warning(f"Rejecting connection: max connections ({self.max_connections}) reached")
                return False

            existing = len(self.connections.get(conversation_id, set()))
            if existing >= self.max_connections_per_conversation:
                logger.warning(
                    f"Rejecting connection: conversation {conversation_id} at limit "
                    f"({self.max_connections_per_conversation})"
                )
                return False

            await websocket.accept()

            self.connections.setdefault(conversation_id, set()).add(websocket)
            self.last_activity[websocket] = time.monotonic()
            ws_connections_active.inc()

            logger.info(
                f"WebSocket connected for conversation {conversation_id} "
                f"(total: {self.connection_count}, conversation: {existing + 1})"
            )
            return True

    async def disconnect(self, websocket: WebSocket, conversation_id: str) -> None:
        async with self._lock:
            sockets = self.connections.get(conversation_id)
            if sockets is not None and websocket in sockets:
                sockets.discard(websocket)
                ws_connections_active.dec()
                if not sockets:
                    del self.connections[conversation_id]
            self.last_activity.pop(websocket, None)

    async def touch(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self.last_activity:
                self.last_activity[websocket] = time.monotonic()

    async def start_idle_checker(self) -> None:
        if self._idle_checker_task is None:
            self._idle_checker_task = asyncio.create_task(self._check_idle_connections())
            logger.info(f"WebSocket idle checker started (timeout: {self.idle_timeout}s)")

    async def stop_idle_checker(self) -> None:
        if self._idle_checker_task:
            self._idle_checker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._idle_checker_task
            self._idle_checker_task = None
            logger.info("WebSocket idle checker stopped")

    async def _check_idle_connections(self) -> None:
        check_interval = min(60.0, self.idle_timeout / 2)
        while True:
            await asyncio.sleep(check_interval)
            await self._close_idle_connections()

    async def _close_idle_connections(self) -> None:
        now = time.monotonic()
        to_close: list[tuple[WebSocket, str]] = []

        async with self._lock:
            for conversation_id, sockets in self.connections.items():
                for ws in sockets:
                    if now - self.last_activity.get(ws, now) > self.idle_timeout:
                        to_close.append((ws, conversation_id))

        # Close outside the lock; disconnect() takes it again
        for ws, conversation_id in to_close:
            logger.info(f"Closing idle WebSocket for conversation {conversation_id}")
            with contextlib.suppress(Exception):
                await ws.close(code=4000, reason="Idle timeout")
            await self.disconnect(ws, conversation_id)

    async def graceful_shutdown(self, timeout: float = 10.0) -> None:
        """Close every connection, waiting at most timeout seconds."""
        self._shutting_down = True
        logger.info(f"Initiating graceful WebSocket shutdown (timeout: {timeout}s)")
        await self.stop_idle_checker()

        async with self._lock:
            all_connections = [(ws, cid) for cid, sockets in self.connections.items() for ws in sockets]

        async def close_connection(ws: WebSocket, conversation_id: str) -> None:
            with contextlib.suppress(Exception):
                await ws.send_json({"type": "server_shutdown", "message": "Server is shutting down"})
                await ws.close(code=1001, reason="Server shutdown")
            await self.disconnect(ws, conversation_id)

        if all_connections:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(close_connection(ws, cid) for ws, cid in all_connections)),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Timeout closing {len(all_connections)} WebSocket connections")

        logger.info(f"WebSocket shutdown complete (closed {len(all_connections)} connections)")

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.connections.values())

    @property
    def conversation_count(self) -> int:
        return len(self.connections)

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_connections": self.connection_count,
            "active_conversations": self.conversation_count,
            "shutting_down": self._shutting_down,
        }
