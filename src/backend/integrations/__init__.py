"""
Integrations Module - External System Integrations
===================================================

Modules:
    agent_gateway: Agent gateway over the OpenAI Agents SDK and the
        per-organization gateway registry

Agent Gateway (agent_gateway.py):
    Creates and releases thread handles, streams text deltas for a run and
    cancels the underlying run when the consumer stops reading. The registry
    resolves an organization to its own gateway when the organization carries
    an AI endpoint and falls back to the global gateway otherwise.
"""
