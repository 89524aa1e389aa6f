"""In-process agent bus.

Collaborators of the orchestrator (process models, extraction, prompts,
deep-links) register under a name and expose a set of intents.  The
orchestrator never calls them directly; it sends an
:class:`~checkout_assistant.models.AgentEnvelope` and awaits the reply, so
any collaborator can be swapped for another implementation of the same
intents.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import structlog

from checkout_assistant.errors import (
    AgentNotRegisteredError,
    InvalidEnvelopeError,
    UnsupportedIntentError,
)
from checkout_assistant.models import AgentEnvelope

logger = structlog.get_logger(__name__)

MESSAGE_REQUEST = "request"
MESSAGE_PING = "ping"

_REQUIRED_FIELDS = ("message_id", "from_agent", "to_agent", "message_type", "intent", "timestamp")

IntentHandler = Callable[[Any], Awaitable[Any]]


class AgentHandler(Protocol):
    """Anything the bus can deliver an envelope to."""

    async def handle(self, envelope: AgentEnvelope) -> Any: ...


class BusAgent:
    """Base class for bus participants with an intent -> handler registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: dict[str, IntentHandler] = {}

    def on(self, intent: str, handler: IntentHandler) -> None:
        """Register *handler* for *intent*; the handler receives the payload."""
        self._handlers[intent] = handler

    @property
    def intents(self) -> list[str]:
        return sorted(self._handlers)

    async def handle(self, envelope: AgentEnvelope) -> Any:
        if envelope.message_type == MESSAGE_PING:
            return {"status": "ok", "agent": self.name}

        handler = self._handlers.get(envelope.intent or "")
        if handler is None:
            raise UnsupportedIntentError(
                f"Agent '{self.name}' does not handle intent '{envelope.intent}'",
                agent=self.name,
                intent=envelope.intent,
            )
        return await handler(envelope.payload)


def make_envelope(
    from_agent: str,
    to_agent: str,
    intent: str,
    payload: Any = None,
    message_type: str = MESSAGE_REQUEST,
) -> AgentEnvelope:
    """Build a complete envelope with a fresh message id and timestamp."""
    return AgentEnvelope(
        message_id=str(uuid.uuid4()),
        from_agent=from_agent,
        to_agent=to_agent,
        message_type=message_type,
        intent=intent,
        payload=payload,
        timestamp=datetime.now(tz=timezone.utc),
    )


def validate_envelope(envelope: AgentEnvelope) -> None:
    """Raise :class:`InvalidEnvelopeError` naming the first missing field.

    ``payload`` is mandatory for every message type except ``ping``.
    """
    for name in _REQUIRED_FIELDS:
        value = getattr(envelope, name)
        if value is None or value == "":
            raise InvalidEnvelopeError(f"Envelope is missing '{name}'", field=name)
    if envelope.payload is None and envelope.message_type != MESSAGE_PING:
        raise InvalidEnvelopeError("Envelope is missing 'payload'", field="payload")


class AgentBus:
    """Name-addressed dispatcher between in-process agents."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentHandler] = {}

    def register(self, name: str, agent: AgentHandler) -> None:
        if name in self._agents:
            logger.info("bus_agent_replaced", agent=name)
        self._agents[name] = agent
        logger.debug("bus_agent_registered", agent=name)

    def unregister(self, name: str) -> None:
        self._agents.pop(name, None)

    @property
    def agents(self) -> list[str]:
        return sorted(self._agents)

    async def send(self, envelope: AgentEnvelope | dict[str, Any]) -> Any:
        """Validate and deliver one envelope, returning the agent's reply.

        Raises
        ------
        InvalidEnvelopeError
            If a mandatory field is missing.
        AgentNotRegisteredError
            If ``toAgent`` is unknown.
        UnsupportedIntentError
            If the agent has no handler for the intent.
        """
        if isinstance(envelope, dict):
            envelope = AgentEnvelope.model_validate(envelope)
        validate_envelope(envelope)

        agent = self._agents.get(envelope.to_agent or "")
        if agent is None:
            logger.error(
                "bus_agent_not_registered",
                to_agent=envelope.to_agent,
                intent=envelope.intent,
            )
            raise AgentNotRegisteredError(
                f"No agent registered as '{envelope.to_agent}'",
                to_agent=envelope.to_agent,
            )

        logger.debug(
            "bus_dispatch",
            message_id=envelope.message_id,
            from_agent=envelope.from_agent,
            to_agent=envelope.to_agent,
            intent=envelope.intent,
        )
        return await agent.handle(envelope)

    async def request(self, from_agent: str, to_agent: str, intent: str, payload: Any) -> Any:
        """Shorthand for sending a ``request`` envelope."""
        return await self.send(make_envelope(from_agent, to_agent, intent, payload))

    async def ping(self, from_agent: str, to_agent: str) -> Any:
        return await self.send(
            make_envelope(from_agent, to_agent, MESSAGE_PING, message_type=MESSAGE_PING)
        )

    async def broadcast(
        self,
        from_agent: str,
        message_type: str,
        intent: str,
        payload: Any = None,
    ) -> list[Any]:
        """Send the same message to every other agent concurrently.

        Agents that do not handle the intent are skipped; replies come back
        in agent-name order.
        """
        targets = [name for name in self.agents if name != from_agent]
        envelopes = [
            make_envelope(from_agent, name, intent, payload, message_type=message_type)
            for name in targets
        ]
        outcomes = await asyncio.gather(
            *(self.send(envelope) for envelope in envelopes),
            return_exceptions=True,
        )

        replies: list[Any] = []
        for name, outcome in zip(targets, outcomes):
            if isinstance(outcome, UnsupportedIntentError):
                logger.debug("bus_broadcast_skipped", agent=name, intent=intent)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            replies.append(outcome)
        return replies
