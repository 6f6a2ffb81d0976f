"""
Agent gateway over the OpenAI Agents SDK.

A gateway owns one agent identity (model, name, instructions, client) and the
thread handles created through it. A thread handle wraps an in-memory SDK
session, so its context exists only inside this gateway instance: a thread id
stored elsewhere cannot be turned back into a handle after a restart or on
another instance. get_thread() answers from the local map only.

AgentGatewayRegistry resolves the gateway for an organization, falling back to
the shared global gateway when the organization has no AI configuration.
"""

from __future__ import annotations

import asyncio
import inspect

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agents import Agent, RunConfig, Runner, SQLiteSession
from agents.models.openai_provider import OpenAIProvider
from openai import AsyncOpenAI

from core.constants import (
    MAX_AGENT_TURNS,
    OUTPUT_TEXT_DELTA,
    RAW_RESPONSE_EVENT,
    THREAD_CACHE_MAX_SIZE,
    THREAD_TTL_HOURS,
    Settings,
)
from models.conversation_models import Organization, generate_thread_id, utc_now
from utils.cache import TTLCache
from utils.client_factory import create_http_client, create_openai_client
from utils.logger import logger


class AgentGatewayError(Exception):
    """Base exception for agent gateway failures."""


class AgentConfigurationError(AgentGatewayError):
    """Raised when a gateway cannot be initialized from its configuration."""


@dataclass(frozen=True)
class AgentConfig:
    """Everything needed to establish one agent identity."""

    model: str
    name: str
    instructions: str
    api_key: str | None = None
    endpoint: str | None = None
    require_endpoint: bool = False
    read_timeout: float | None = None
    label: str = "global"

    @classmethod
    def from_settings(cls, settings: Settings) -> AgentConfig:
        if settings.api_provider == "azure":
            api_key = settings.azure_openai_api_key
            endpoint: str | None = settings.azure_endpoint_str or None
        else:
            api_key = settings.openai_api_key
            endpoint = None
        return cls(
            model=settings.agent_model,
            name=settings.agent_name,
            instructions=settings.agent_instructions,
            api_key=api_key,
            endpoint=endpoint,
            require_endpoint=settings.api_provider == "azure",
            read_timeout=settings.http_read_timeout,
        )

    def for_organization(self, organization: Organization) -> AgentConfig:
        """Derive an organization's config, inheriting unset fields from this one."""
        ai = organization.ai_config
        if ai is None:
            return self
        return AgentConfig(
            model=ai.model_deployment or self.model,
            name=ai.agent_name or self.name,
            instructions=ai.agent_instructions or ai.system_prompt or self.instructions,
            api_key=ai.api_key or self.api_key,
            endpoint=ai.endpoint,
            require_endpoint=True,
            read_timeout=self.read_timeout,
            label=f"org:{organization.id}",
        )


@dataclass
class ThreadHandle:
    """Live agent thread. Valid only for the gateway that created it."""

    thread_id: str
    conversation_id: str
    created_at: datetime
    session: SQLiteSession = field(repr=False)


ClientFactory = Callable[[AgentConfig], AsyncOpenAI]


def _default_client_factory(config: AgentConfig) -> AsyncOpenAI:
    return create_openai_client(
        api_key=config.api_key or "",
        base_url=config.endpoint,
        http_client=create_http_client(read_timeout=config.read_timeout),
    )


class AgentGateway:
    """Runs one agent identity and owns the thread handles created for it."""

    def __init__(
        self,
        config: AgentConfig,
        client_factory: ClientFactory | None = None,
        thread_ttl: timedelta = timedelta(hours=THREAD_TTL_HOURS),
        max_threads: int = THREAD_CACHE_MAX_SIZE,
    ) -> None:
        self.config = config
        self._client_factory = client_factory or _default_client_factory
        self._thread_ttl = thread_ttl
        self._threads = TTLCache(max_size=max_threads, default_ttl=thread_ttl.total_seconds())
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._client: AsyncOpenAI | None = None
        self._provider: OpenAIProvider | None = None
        self._agent: Agent | None = None

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Establish the agent identity. Safe to call repeatedly and concurrently."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            if self.config.require_endpoint and not self.config.endpoint:
                raise AgentConfigurationError(f"AI endpoint is not configured for {self.config.label} agent")
            if not self.config.api_key:
                raise AgentConfigurationError(f"AI API key is not configured for {self.config.label} agent")

            self._client = self._client_factory(self.config)
            # Dedicated provider per gateway keeps concurrent streams isolated
            self._provider = OpenAIProvider(openai_client=self._client)
            self._agent = Agent(
                name=self.config.name,
                instructions=self.config.instructions,
                model=self.config.model,
            )
            self._initialized = True
            logger.info(f"Agent gateway initialized: {self.config.label} ({self.config.name}, model={self.config.model})")

    def _require_agent(self) -> Agent:
        if not self._initialized or self._agent is None:
            raise AgentGatewayError(f"Agent gateway {self.config.label} is not initialized")
        return self._agent

    def _run_config(self) -> RunConfig:
        return RunConfig(model_provider=self._provider)

    async def new_thread(self, conversation_id: str, now: datetime | None = None) -> ThreadHandle:
        """Create a fresh thread handle with no prior agent-side context.

        Args:
            conversation_id: Conversation the thread will serve
            now: Creation time, defaults to the current UTC time

        Returns:
            New handle registered with this gateway
        """
        created_at = now or utc_now()
        thread_id = generate_thread_id(conversation_id, created_at)
        handle = ThreadHandle(
            thread_id=thread_id,
            conversation_id=conversation_id,
            created_at=created_at,
            session=SQLiteSession(thread_id),
        )
        await self._threads.set(thread_id, handle)
        logger.info(f"Created thread {thread_id} for conversation {conversation_id}")
        return handle

    async def get_thread(self, thread_id: str) -> ThreadHandle | None:
        """Return a live handle created by this gateway, if it is still held."""
        handle: ThreadHandle | None = await self._threads.get(thread_id)
        return handle

    async def release_thread(self, thread_id: str) -> None:
        handle: ThreadHandle | None = await self._threads.get(thread_id)
        await self._threads.delete(thread_id)
        if handle is not None:
            handle.session.close()
            logger.info(f"Released thread {thread_id}")

    async def run_streaming(self, handle: ThreadHandle, message: str) -> AsyncIterator[str]:
        """Stream assistant text deltas for one user message on a thread.

        If the consumer stops early (or is cancelled) the SDK run is cancelled too.

        Args:
            handle: Thread handle created by this gateway
            message: Sanitized user message

        Yields:
            Non-empty text deltas in the order the model produced them

        Raises:
            AgentGatewayError: If the gateway has not been initialized
        """
        agent = self._require_agent()
        candidate = Runner.run_streamed(
            agent,
            input=message,
            session=handle.session,
            run_config=self._run_config(),
            max_turns=MAX_AGENT_TURNS,
        )
        result = await candidate if inspect.isawaitable(candidate) else candidate

        finished = False
        try:
            async for event in result.stream_events():
                if event.type != RAW_RESPONSE_EVENT:
                    continue
                data = getattr(event, "data", None)
                if getattr(data, "type", None) == OUTPUT_TEXT_DELTA:
                    delta = getattr(data, "delta", None)
                    if delta:
                        yield delta
            finished = True
        finally:
            if not finished:
                result.cancel()
                logger.info(f"Agent stream cancelled for thread {handle.thread_id}")

    async def run(self, handle: ThreadHandle, message: str) -> str:
        """Run one user message to completion and return the assistant text."""
        agent = self._require_agent()
        result = await Runner.run(
            agent,
            input=message,
            session=handle.session,
            run_config=self._run_config(),
            max_turns=MAX_AGENT_TURNS,
        )
        return "" if result.final_output is None else str(result.final_output)

    def stats(self) -> dict[str, object]:
        return {"label": self.config.label, "initialized": self._initialized, "threads": self._threads.stats()}

    async def dispose(self) -> None:
        """Drop all thread handles and close the client."""
        await self._threads.clear()
        if self._client is not None:
            await self._client.close()
        self._client = None
        self._provider = None
        self._agent = None
        self._initialized = False
        logger.info(f"Agent gateway disposed: {self.config.label}")


OrganizationLookup = Callable[[str], Awaitable[Organization | None]]
GatewayFactory = Callable[[AgentConfig], AgentGateway]


class AgentGatewayRegistry:
    """Resolves the agent gateway for an organization.

    Organizations with their own AI endpoint get a dedicated gateway, created
    and initialized once; everything else shares the default gateway. Both
    outcomes are remembered per organization id.
    """

    def __init__(
        self,
        default_gateway: AgentGateway,
        organization_lookup: OrganizationLookup,
        gateway_factory: GatewayFactory | None = None,
    ) -> None:
        self.default_gateway = default_gateway
        self._lookup = organization_lookup
        self._factory = gateway_factory or AgentGateway
        self._gateways: dict[str, AgentGateway] = {}
        self._uses_default: set[str] = set()
        self._lock = asyncio.Lock()

    async def resolve(self, organization_id: str | None = None) -> AgentGateway:
        """Return the gateway that serves an organization.

        Args:
            organization_id: Owning organization of the conversation, if any

        Returns:
            The organization's dedicated gateway, or the default gateway when
            the organization is unknown, inactive, has no private endpoint or
            cannot be looked up

        Raises:
            AgentConfigurationError: If a dedicated gateway fails to initialize
        """
        if not organization_id or organization_id in self._uses_default:
            return self.default_gateway

        gateway = self._gateways.get(organization_id)
        if gateway is not None:
            return gateway

        try:
            organization = await self._lookup(organization_id)
        except Exception as e:
            # Not remembered, the next send retries the lookup
            logger.warning(f"Organization lookup failed for {organization_id}, using global agent: {e}")
            return self.default_gateway

        if organization is None or not organization.is_active:
            logger.warning(f"Organization {organization_id} not found or inactive, using global agent")
            self._uses_default.add(organization_id)
            return self.default_gateway
        if organization.ai_config is None or not organization.ai_config.endpoint:
            logger.debug(f"Organization {organization_id} has no private AI endpoint, using global agent")
            self._uses_default.add(organization_id)
            return self.default_gateway

        async with self._lock:
            gateway = self._gateways.get(organization_id)
            if gateway is None:
                gateway = self._factory(self.default_gateway.config.for_organization(organization))
                await gateway.initialize()
                self._gateways[organization_id] = gateway
                logger.info(f"Registered agent gateway for organization {organization_id}")
        return gateway

    def __len__(self) -> int:
        return len(self._gateways)

    async def shutdown(self) -> None:
        """Dispose the default gateway and every organization gateway."""
        async with self._lock:
            gateways = [self.default_gateway, *self._gateways.values()]
            self._gateways.clear()
            self._uses_default.clear()
        for gateway in gateways:
            try:
                await gateway.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose agent gateway {gateway.config.label}: {e}")
