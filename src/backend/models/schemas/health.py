"""
Health check API schemas.

Response models for health and liveness probes.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DatabaseHealth(BaseModel):
    """Database connection pool health."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "healthy": True,
                "pool_size": 10,
                "pool_free": 8,
                "pool_used": 2,
            }
        }
    )

    healthy: bool = Field(..., description="Database is accessible")
    pool_size: int = Field(default=0, ge=0, description="Total pool size")
    pool_free: int = Field(default=0, ge=0, description="Available connections")
    pool_used: int = Field(default=0, ge=0, description="Active connections")
    error: str | None = Field(default=None, description="Error if unhealthy")


class ThreadStateHealth(BaseModel):
    """Thread binding store health."""

    model_config = ConfigDict(
        json_schema_extra={"example": {"backend": "memory", "healthy": True, "stats": {"size": 12}}},
    )

    backend: str = Field(..., description="'memory', 'redis' or 'conversation'")
    healthy: bool = Field(..., description="Store answered a probe")
    stats: dict[str, Any] = Field(default_factory=dict, description="Backend statistics")
    error: str | None = Field(default=None, description="Error if unhealthy")


class WebSocketHealth(BaseModel):
    active_connections: int = Field(default=0, ge=0, description="Open connections")
    active_conversations: int = Field(default=0, ge=0, description="Conversations with an open connection")
    shutting_down: bool = Field(default=False, description="Shutdown in progress")


class HealthResponse(BaseModel):
    """Comprehensive health check response."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "version": "1.0.0",
                "database": {"healthy": True, "pool_size": 10, "pool_free": 8, "pool_used": 2},
                "thread_state": {"backend": "memory", "healthy": True},
                "websocket": {"active_connections": 3, "active_conversations": 2, "shutting_down": False},
            }
        }
    )

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall system health status")
    version: str = Field(..., description="Application version")
    database: DatabaseHealth = Field(..., description="Database health")
    thread_state: ThreadStateHealth = Field(..., description="Thread binding store health")
    websocket: WebSocketHealth = Field(default_factory=WebSocketHealth, description="WebSocket health")


class LivenessResponse(BaseModel):
    """Kubernetes-style liveness probe response."""

    alive: bool = Field(default=True, description="Process is running")
