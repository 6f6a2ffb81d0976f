from __future__ import annotations

from typing import Annotated

import asyncpg

from fastapi import Depends, Request

from api.middleware.auth import get_current_user
from api.services.conversation_repository import ConversationRepository
from api.services.orchestrator import ConversationOrchestrator
from api.services.preferences_service import PreferencesService
from api.services.thread_state import ThreadStateStore
from api.websocket.manager import WebSocketManager
from core.constants import Settings, get_settings
from models.api_models import UserInfo


def get_app_settings() -> Settings:
    """Provide application settings via dependency injection.

    In development with CONFIG_HOT_RELOAD=true, settings are reloaded
    on each request to pick up .env file changes without restart.

    Usage in routes:
        @router.get("/example")
        async def example(settings: AppSettings):
            return {"debug": settings.debug}
    """
    return get_settings()


async def get_db(request: Request) -> asyncpg.Pool:
    """Get database connection pool from application state."""
    return request.app.state.db_pool


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    """Get the conversation orchestrator built at startup."""
    return request.app.state.orchestrator


def get_thread_store(request: Request) -> ThreadStateStore:
    return request.app.state.thread_store


def get_repository(db: Annotated[asyncpg.Pool, Depends(get_db)]) -> ConversationRepository:
    return ConversationRepository(db)


def get_preferences_service(
    repository: Annotated[ConversationRepository, Depends(get_repository)],
) -> PreferencesService:
    return PreferencesService(repository)


def get_ws_manager(request: Request) -> WebSocketManager:
    """Get WebSocket manager from application state."""
    return request.app.state.ws_manager


# Type aliases for cleaner route signatures
DB = Annotated[asyncpg.Pool, Depends(get_db)]
Orchestrator = Annotated[ConversationOrchestrator, Depends(get_orchestrator)]
ThreadStore = Annotated[ThreadStateStore, Depends(get_thread_store)]
Repository = Annotated[ConversationRepository, Depends(get_repository)]
Preferences = Annotated[PreferencesService, Depends(get_preferences_service)]
WSManager = Annotated[WebSocketManager, Depends(get_ws_manager)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
CurrentUser = Annotated[UserInfo, Depends(get_current_user)]
