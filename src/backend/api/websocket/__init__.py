"""WebSocket utilities for orgchat.

Provides connection management, cancellation tokens, and error utilities.
"""

from __future__ import annotations

from api.websocket.errors import WSCloseCode, close_with_error, send_ws_error
from api.websocket.manager import WebSocketManager
from api.websocket.task_manager import CancellationToken

__all__ = [
    "CancellationToken",
    "WSCloseCode",
    "WebSocketManager",
    "close_with_error",
    "send_ws_error",
]
