"""
Per-request identity for logs and error bodies.

Each REST request and each chat socket gets a RequestContext in a ContextVar:
a request id (echoed in X-Request-ID and in every error envelope), the caller's
user and organization once authenticated, and the conversation the request is
about. utils.logger merges it into every record emitted inside the request.
"""

from __future__ import annotations

import re
import secrets
import time

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from utils.metrics import request_duration_seconds

REQUEST_ID_PREFIX = "req_"
WEBSOCKET_ID_PREFIX = "ws_"

_CONVERSATION_PATH = re.compile(r"/conversations/([^/]+)")

_current: ContextVar[RequestContext | None] = ContextVar("orgchat_request_context", default=None)


@dataclass
class RequestContext:
    request_id: str
    start_time: float = field(default_factory=time.monotonic)
    path: str = ""
    method: str = ""
    client_ip: str | None = None
    user_id: str | None = None
    organization_id: str | None = None
    conversation_id: str | None = None

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.start_time) * 1000

    def to_log_context(self) -> dict[str, Any]:
        """Fields for a log record; identity fields only once known."""
        ctx: dict[str, Any] = {
            "request_id": self.request_id,
            "path": self.path,
            "method": self.method,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        for name in ("client_ip", "user_id", "organization_id", "conversation_id"):
            value = getattr(self, name)
            if value:
                ctx[name] = value
        return ctx


def generate_request_id(prefix: str = REQUEST_ID_PREFIX) -> str:
    """New id such as req_a1b2c3d4e5f6a7b8 (64 random bits)."""
    return f"{prefix}{secrets.token_hex(8)}"


def get_request_context() -> RequestContext | None:
    return _current.get()


def get_request_id() -> str | None:
    ctx = _current.get()
    return ctx.request_id if ctx else None


def set_request_context(context: RequestContext) -> None:
    _current.set(context)


def clear_request_context() -> None:
    _current.set(None)


def update_request_context(
    *,
    user_id: str | None = None,
    organization_id: str | None = None,
    conversation_id: str | None = None,
) -> None:
    """Record identity learned mid-request. No-op outside a request; None leaves a field as is."""
    ctx = _current.get()
    if ctx is None:
        return
    if user_id is not None:
        ctx.user_id = user_id
    if organization_id is not None:
        ctx.organization_id = organization_id
    if conversation_id is not None:
        ctx.conversation_id = conversation_id


def _conversation_id_from_path(path: str) -> str | None:
    match = _CONVERSATION_PATH.search(path)
    return match.group(1) if match else None


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # Leftmost entry is the original client
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Open a RequestContext per REST request and report its duration.

    An incoming X-Request-ID is reused so ids line up with an upstream proxy.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = RequestContext(
            request_id=request.headers.get("X-Request-ID") or generate_request_id(),
            path=request.url.path,
            method=request.method,
            client_ip=_client_ip(request),
            conversation_id=_conversation_id_from_path(request.url.path),
        )
        set_request_context(context)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = context.request_id
            response.headers["X-Response-Time"] = f"{context.elapsed_ms:.2f}ms"
            route = request.scope.get("route")
            request_duration_seconds.labels(
                method=request.method,
                path=getattr(route, "path", "unmatched"),
                status=str(response.status_code),
            ).observe(context.elapsed_ms / 1000)
            return response
        finally:
            clear_request_context()


def create_websocket_context(
    conversation_id: str | None = None,
    client_ip: str | None = None,
) -> RequestContext:
    """Open the context for a chat socket; it lives for the whole connection."""
    context = RequestContext(
        request_id=generate_request_id(WEBSOCKET_ID_PREFIX),
        path="/ws/chat",
        method="WEBSOCKET",
        client_ip=client_ip,
        conversation_id=conversation_id,
    )
    set_request_context(context)
    return context
