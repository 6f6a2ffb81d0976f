from __future__ import annotations

import asyncio

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from agents import set_default_openai_client, set_tracing_disabled
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware.exception_handlers import register_exception_handlers
from api.middleware.request_context import RequestContextMiddleware
from api.routes import chat
from api.routes.v1 import router as v1_router
from api.services.context_window import ContextWindowPolicy
from api.services.conversation_repository import ConversationRepository
from api.services.orchestrator import ConversationOrchestrator
from api.services.sanitization import MessageSanitizer
from api.services.thread_state import create_thread_state_store
from api.websocket.manager import WebSocketManager
from core.constants import ConversationLimits, get_settings
from integrations.agent_gateway import AgentConfig, AgentGateway, AgentGatewayRegistry
from utils.client_factory import create_http_client, create_openai_client
from utils.db_utils import check_pool_health, create_database_pool, graceful_pool_close
from utils.logger import configure_uvicorn_logging, logger

# Settings are loaded via Pydantic Settings with environment-specific file support
# (.env, .env.{APP_ENV}, .env.local)
settings = get_settings()

if settings.debug:
    from core.constants import _get_env_files

    logger.info(f"Env files: {[f.name for f in _get_env_files()]}")
    logger.info(
        f"Settings: app_env={settings.app_env}, provider={settings.api_provider}, "
        f"thread_state={settings.thread_state_backend}, db_pool=[{settings.db_pool_min_size},{settings.db_pool_max_size}]"
    )

# Configure uvicorn logging at module level to ensure workers use it
configure_uvicorn_logging()


def _setup_openai_client(agent_config: AgentConfig) -> None:
    """Register the global client as the agents SDK default and disable tracing."""
    logger.info(f"Configuring {settings.api_provider} client (endpoint: {agent_config.endpoint or 'default'})")
    http_client = create_http_client(read_timeout=settings.http_read_timeout)
    client = create_openai_client(agent_config.api_key or "", base_url=agent_config.endpoint, http_client=http_client)

    set_default_openai_client(client)

    # Disable tracing to avoid 401 errors with Azure
    set_tracing_disabled(True)

    logger.info("OpenAI client registered with agents SDK")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown with graceful handling."""
    shutdown_event = asyncio.Event()
    app.state.shutdown_event = shutdown_event

    agent_config = AgentConfig.from_settings(settings)
    _setup_openai_client(agent_config)

    app.state.db_pool = await create_database_pool(
        dsn=settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        command_timeout=settings.db_command_timeout,
        connection_timeout=settings.db_connection_timeout,
        statement_cache_size=settings.db_statement_cache_size,
        max_inactive_connection_lifetime=settings.db_max_inactive_connection_lifetime,
    )

    health = await check_pool_health(app.state.db_pool)
    if not health["healthy"]:
        logger.error("Database health check failed during startup")
        raise RuntimeError("Database connection failed")
    logger.info(f"Database pool healthy: {health}")

    app.state.thread_store = create_thread_state_store(settings)

    repository = ConversationRepository(app.state.db_pool)
    default_gateway = AgentGateway(
        agent_config,
        thread_ttl=timedelta(hours=settings.thread_ttl_hours),
        max_threads=settings.thread_cache_max_size,
    )
    await default_gateway.initialize()
    app.state.gateways = AgentGatewayRegistry(default_gateway, repository.get_organization)

    app.state.orchestrator = ConversationOrchestrator(
        repository,
        app.state.thread_store,
        app.state.gateways,
        context_policy=ContextWindowPolicy(),
        sanitizer=MessageSanitizer(hard_limit=settings.message_hard_limit),
        limits=ConversationLimits.from_settings(settings),
    )

    app.state.ws_manager = WebSocketManager(
        idle_timeout_seconds=settings.ws_idle_timeout,
        max_connections=settings.ws_max_connections,
        max_connections_per_conversation=settings.ws_max_connections_per_conversation,
    )
    await app.state.ws_manager.start_idle_checker()

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown sequence")
        shutdown_event.set()

        # Phase 1: Stop accepting chat sockets and cancel sends in flight
        await app.state.ws_manager.graceful_shutdown(timeout=settings.shutdown_timeout / 3)

        # Phase 2: Dispose agent gateways and their thread handles
        await app.state.gateways.shutdown()

        # Phase 3: Close the thread binding store
        try:
            await app.state.thread_store.close()
        except Exception as e:
            logger.warning(f"Failed to close thread state store: {e}")

        # Phase 4: Gracefully close database pool
        await graceful_pool_close(app.state.db_pool, timeout=settings.shutdown_timeout)


app = FastAPI(
    title="orgchat API",
    description="""
## orgchat API

Multi-tenant conversational AI service. Each organization may bring its own
AI endpoint; everyone else shares the global agent.

### Features
- **Conversations**: Create, rename, list, and delete conversations
- **Real-time Chat**: WebSocket streaming with interrupt support
- **Thread State**: Agent threads bound to conversations with a 24 hour lifetime
- **Preferences**: Per-user preference documents

### Identity
Requests carry `X-User-Id` (and optionally `X-Organization-Id`) set by the
upstream authenticator.

### Versioning
API uses URL path versioning: `/api/v1/...`
""",
    version=settings.app_version,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints for monitoring and orchestration"},
        {"name": "Conversations", "description": "Conversation CRUD, message history and resume"},
        {"name": "Preferences", "description": "Per-user preferences"},
        {"name": "WebSocket", "description": "Real-time chat streaming"},
    ],
    openapi_url="/api/v1/openapi.json",
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
)

register_exception_handlers(app)

# Middleware is executed in reverse order of registration
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(v1_router, prefix="/api/v1")

# WebSocket routes (not versioned - protocol-level)
app.include_router(chat.router, prefix="/ws", tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        reload_dirs=["src/backend"],
        log_config=None,
    )
