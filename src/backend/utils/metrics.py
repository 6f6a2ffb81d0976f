"""
Prometheus metrics configuration for orgchat.

Defines the conversation, thread binding, and transport metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "orgchat"

request_duration_seconds = Histogram(
    f"{NAMESPACE}_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


# ============================================================================
# Conversation Metrics
# ============================================================================

messages_sent_total = Counter(
    f"{NAMESPACE}_messages_sent_total",
    "User messages accepted by the orchestrator",
    ["status"],  # "accepted", "rejected", "save_failed"
)

messages_received_total = Counter(
    f"{NAMESPACE}_messages_received_total",
    "Assistant responses produced by the orchestrator",
    ["status"],  # "completed", "cancelled", "failed"
)

ai_response_duration_seconds = Histogram(
    f"{NAMESPACE}_ai_response_duration_seconds",
    "Time from agent invocation to the end of the response stream",
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

prompt_injection_attempts_total = Counter(
    f"{NAMESPACE}_prompt_injection_attempts_total",
    "Messages matching a known prompt-injection phrase (detected, not blocked)",
)

conversation_events_total = Counter(
    f"{NAMESPACE}_conversation_events_total",
    "Conversation lifecycle events",
    ["event"],  # "created", "deleted", "resumed", "renamed"
)

orchestrator_errors_total = Counter(
    f"{NAMESPACE}_orchestrator_errors_total",
    "Failures inside the send pipeline by stage",
    ["stage"],
)


# ============================================================================
# Thread / Context Metrics
# ============================================================================

thread_bindings_total = Counter(
    f"{NAMESPACE}_thread_bindings_total",
    "Thread binding resolutions by outcome",
    ["outcome"],  # "reused", "created", "expired", "lost"
)

context_trims_total = Counter(
    f"{NAMESPACE}_context_trims_total",
    "Histories that exceeded the token budget and were trimmed",
)

context_tokens_estimated = Histogram(
    f"{NAMESPACE}_context_tokens_estimated",
    "Estimated tokens of loaded conversation history",
    buckets=(250, 500, 1000, 2000, 4000, 6000, 8000, 16000, 32000),
)


# ============================================================================
# WebSocket Metrics
# ============================================================================

ws_connections_active = Gauge(
    f"{NAMESPACE}_websocket_connections_active",
    "Number of currently active WebSocket connections",
)

ws_messages_total = Counter(
    f"{NAMESPACE}_websocket_messages_total",
    "Total number of WebSocket messages processed",
    ["direction"],  # "inbound" or "outbound"
)


# ============================================================================
# Database Metrics
# ============================================================================

db_pool_connections = Gauge(
    f"{NAMESPACE}_db_pool_connections",
    "Number of database connections by state",
    ["state"],  # "free" or "used"
)
