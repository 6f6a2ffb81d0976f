"""
API v1 Router - Aggregates all v1 endpoints.

Usage in main.py:
    from api.routes.v1 import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from api.routes.v1 import conversations, health, preferences

router = APIRouter()

# Health endpoints (no identity required)
router.include_router(
    health.router,
    tags=["Health"],
)

# Conversation CRUD, message history and resume
router.include_router(
    conversations.router,
    prefix="/conversations",
    tags=["Conversations"],
)

# Per-user preferences
router.include_router(
    preferences.router,
    tags=["Preferences"],
)

__all__ = ["router"]
