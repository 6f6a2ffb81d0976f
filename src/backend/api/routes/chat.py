"""
WebSocket chat endpoint.

Client frames:
    {"type": "message", "content": "..."}   start a send (cancels one in flight)
    {"type": "interrupt"}                   cancel the send in flight

Server frames:
    {"type": "chunk", "content", "message_id", "is_complete", "error", "was_saved"}
    {"type": "error", ...}                  see models.error_models.WebSocketError
    {"type": "ping"}                        keepalive
"""

from __future__ import annotations

import asyncio
import contextlib

from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.middleware.auth import get_current_user_for_websocket
from api.middleware.request_context import create_websocket_context, get_request_id, update_request_context
from api.services.orchestrator import ConversationOrchestrator
from api.websocket.errors import WSCloseCode, exception_to_error_code, is_recoverable, send_ws_error
from api.websocket.manager import WebSocketManager
from api.websocket.task_manager import CancellationToken
from core.constants import get_settings
from models.error_models import ErrorCode
from utils.logger import logger
from utils.metrics import ws_messages_total

router = APIRouter()

PREVIOUS_SEND_EXIT_TIMEOUT = 5.0


@router.websocket("/chat/{conversation_id}")
async def chat_websocket(websocket: WebSocket, conversation_id: str) -> None:
    """WebSocket endpoint for streaming conversation replies."""
    logger.info(f"WebSocket upgrade request received for conversation {conversation_id}")
    orchestrator: ConversationOrchestrator = websocket.app.state.orchestrator
    ws_manager: WebSocketManager = websocket.app.state.ws_manager
    settings = get_settings()

    client_ip = websocket.client.host if websocket.client else None
    create_websocket_context(conversation_id=conversation_id, client_ip=client_ip)

    user = get_current_user_for_websocket(websocket)
    if user is None:
        await websocket.close(code=WSCloseCode.AUTH_REQUIRED)
        return
    update_request_context(user_id=user.id, organization_id=user.organization_id)

    if await orchestrator.get_conversation(conversation_id, user.id) is None:
        await websocket.close(code=WSCloseCode.CONVERSATION_NOT_FOUND, reason="Conversation not found")
        return

    if not await ws_manager.connect(websocket, conversation_id):
        # Not yet accepted; accept so the close code reaches the client
        await websocket.accept()
        await websocket.close(code=WSCloseCode.SERVICE_UNAVAILABLE, reason="Service unavailable")
        return

    active_send_task: asyncio.Task[None] | None = None
    active_token: CancellationToken | None = None

    try:
        keepalive_task = asyncio.create_task(_keepalive(websocket, settings.ws_keepalive_interval))
        try:
            async for data in websocket.iter_json():
                await ws_manager.touch(websocket)
                ws_messages_total.labels(direction="inbound").inc()
                msg_type = data.get("type") if isinstance(data, dict) else None

                if msg_type == "message":
                    if active_send_task and not active_send_task.done():
                        if active_token:
                            await active_token.cancel(reason="New message received")
                        try:
                            await asyncio.wait_for(active_send_task, timeout=PREVIOUS_SEND_EXIT_TIMEOUT)
                        except asyncio.TimeoutError:
                            logger.warning(f"Previous send didn't exit within timeout for {conversation_id}")
                            active_send_task.cancel()
                            with contextlib.suppress(asyncio.CancelledError):
                                await active_send_task

                    active_token = CancellationToken()
                    active_send_task = asyncio.create_task(
                        _handle_chat_message(data, conversation_id, user.id, orchestrator, websocket, active_token)
                    )

                elif msg_type == "interrupt":
                    if active_send_task and not active_send_task.done() and active_token:
                        logger.info(f"Interrupt received for conversation {conversation_id}")
                        await active_token.cancel(reason="User interrupt")
                    else:
                        logger.info(f"No active send to interrupt for conversation {conversation_id}")

                elif msg_type == "pong":
                    continue

                else:
                    await send_ws_error(
                        websocket,
                        code=ErrorCode.WS_MESSAGE_INVALID,
                        message=f"Unknown message type: {msg_type!r}",
                        conversation_id=conversation_id,
                    )
        finally:
            keepalive_task.cancel()
            if active_send_task and not active_send_task.done():
                if active_token:
                    await active_token.cancel(reason="Connection closing")
                active_send_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await active_send_task
    except WebSocketDisconnect:
        logger.debug(f"WebSocket disconnected for conversation {conversation_id}")
    except RuntimeError as e:
        # Client went away mid-send
        if "not connected" not in str(e).lower():
            raise
    finally:
        await ws_manager.disconnect(websocket, conversation_id)


async def _handle_chat_message(
    data: dict[str, Any],
    conversation_id: str,
    user_id: str,
    orchestrator: ConversationOrchestrator,
    websocket: WebSocket,
    cancellation_token: CancellationToken,
) -> None:
    """Stream one send to the socket (runs as a background task)."""
    content = data.get("content")
    if not isinstance(content, str):
        await send_ws_error(
            websocket,
            code=ErrorCode.WS_MESSAGE_INVALID,
            message="Missing required field: content",
            conversation_id=conversation_id,
            details={"missing_fields": ["content"]},
        )
        return

    try:
        async for chunk in orchestrator.send_message_streaming(
            conversation_id,
            user_id,
            content,
            cancellation_token=cancellation_token,
        ):
            await websocket.send_json({"type": "chunk", **chunk.model_dump(mode="json")})
            ws_messages_total.labels(direction="outbound").inc()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(
            f"Chat processing error: {e}",
            conversation_id=conversation_id,
            request_id=get_request_id(),
            exc_info=True,
        )
        code = exception_to_error_code(e)
        await send_ws_error(
            websocket,
            code=code,
            message=f"Chat processing failed: {type(e).__name__}",
            conversation_id=conversation_id,
            recoverable=is_recoverable(code),
        )


async def _keepalive(websocket: WebSocket, interval: float) -> None:
    """Send periodic ping frames."""
    while True:
        await asyncio.sleep(interval)
        try:
            await websocket.send_json({"type": "ping"})
        except Exception:
            break
