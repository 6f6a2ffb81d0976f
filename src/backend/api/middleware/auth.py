"""
Caller identity for REST and WebSocket endpoints.

Authentication happens upstream (gateway or ingress); requests arrive with
trusted X-User-Id / X-Organization-Id headers. Local development on
localhost may omit them and act as settings.default_user_id.
"""

from __future__ import annotations

from fastapi import Request, WebSocket

from api.middleware.exception_handlers import AuthenticationError
from api.middleware.request_context import update_request_context
from core.constants import get_settings
from models.api_models import UserInfo

USER_ID_HEADER = "X-User-Id"
ORGANIZATION_ID_HEADER = "X-Organization-Id"

LOCALHOST_HOSTS = frozenset({"127.0.0.1", "localhost", "::1", "testclient"})


def _resolve_identity(user_id: str | None, organization_id: str | None, client_host: str | None) -> UserInfo | None:
    settings = get_settings()
    user_id = (user_id or "").strip()
    organization_id = (organization_id or "").strip() or None

    if user_id:
        return UserInfo(id=user_id, organization_id=organization_id)

    if settings.allow_localhost_noauth and client_host in LOCALHOST_HOSTS:
        return UserInfo(id=settings.default_user_id, organization_id=organization_id)
    return None


async def get_current_user(request: Request) -> UserInfo:
    """Resolve the caller of a REST request."""
    client_host = request.client.host if request.client else None
    user = _resolve_identity(
        request.headers.get(USER_ID_HEADER),
        request.headers.get(ORGANIZATION_ID_HEADER),
        client_host,
    )
    if user is None:
        raise AuthenticationError()

    update_request_context(user_id=user.id, organization_id=user.organization_id)
    return user


def get_current_user_for_websocket(websocket: WebSocket) -> UserInfo | None:
    """Resolve the caller of a WebSocket connection, or None if unidentified."""
    client_host = websocket.client.host if websocket.client else None
    return _resolve_identity(
        websocket.headers.get(USER_ID_HEADER),
        websocket.headers.get(ORGANIZATION_ID_HEADER),
        client_host,
    )
