"""
Health check endpoints (v1).

Health covers the database pool and the thread binding store; liveness only
confirms the process answers.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Request

from api.dependencies import DB, AppSettings, ThreadStore
from api.services.thread_state import ThreadStateStore
from models.schemas.health import (
    DatabaseHealth,
    HealthResponse,
    LivenessResponse,
    ThreadStateHealth,
    WebSocketHealth,
)
from utils.db_utils import check_pool_health
from utils.logger import logger

router = APIRouter()


async def _thread_state_health(store: ThreadStateStore) -> ThreadStateHealth:
    stats = store.stats()
    backend = str(stats.get("backend", type(store).__name__))
    try:
        healthy = await store.ping()
    except Exception as e:
        logger.warning(f"Thread state health probe failed: {e}")
        return ThreadStateHealth(backend=backend, healthy=False, stats=stats, error=str(e))
    return ThreadStateHealth(backend=backend, healthy=healthy, stats=stats)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database and thread state health with overall status.",
    tags=["Health"],
)
async def health_check(db: DB, thread_store: ThreadStore, settings: AppSettings, request: Request) -> HealthResponse:
    db_health_data = await check_pool_health(db)
    thread_health = await _thread_state_health(thread_store)

    ws_manager = getattr(request.app.state, "ws_manager", None)
    ws_health = WebSocketHealth(**ws_manager.get_stats()) if ws_manager else WebSocketHealth()

    db_healthy = bool(db_health_data.get("healthy", False))
    status: Literal["healthy", "degraded", "unhealthy"]
    if db_healthy and thread_health.healthy:
        status = "healthy"
    elif db_healthy:
        # Redis fails open, so sends still work with fresh threads
        status = "degraded"
    else:
        status = "unhealthy"

    return HealthResponse(
        status=status,
        version=settings.app_version,
        database=DatabaseHealth(
            healthy=db_healthy,
            pool_size=db_health_data.get("pool_size", 0),
            pool_free=db_health_data.get("free_connections", 0),
            pool_used=db_health_data.get("used_connections", 0),
            error=db_health_data.get("error"),
        ),
        thread_state=thread_health,
        websocket=ws_health,
    )


@router.get(
    "/health/live",
    response_model=LivenessResponse,
    summary="Liveness probe",
    tags=["Health"],
)
async def liveness_check() -> LivenessResponse:
    return LivenessResponse(alive=True)
