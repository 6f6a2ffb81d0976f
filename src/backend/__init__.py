"""
orgchat - Multi-tenant conversational AI service
================================================

FastAPI backend that binds conversations to agent threads and streams
replies over WebSocket, with PostgreSQL persistence.

Key Features:
    - **Conversation Orchestration**: Sanitize, persist, resolve a thread, stream, persist the reply
    - **Thread State**: Conversation-to-thread bindings with a 24 hour lifetime (memory, Redis or row-embedded)
    - **Per-Organization Agents**: Organizations with their own AI endpoint get their own gateway
    - **Context Window Policy**: Approximate token budgeting with trimmed history views
    - **Interrupts**: Cooperative cancellation of in-flight replies
    - **Enterprise Logging**: Structured JSON logs with rotation and request correlation

Modules:
    api: FastAPI routes, services, middleware, and WebSocket handling
    core: Configuration constants and settings
    integrations: Agent gateway over the OpenAI Agents SDK
    models: Domain models, API schemas and error codes
    utils: Logging, metrics, caching, database and client helpers
"""
