"""Tests for the in-process agent bus."""

import pytest

from checkout_assistant.errors import (
    AgentNotRegisteredError,
    InvalidEnvelopeError,
    UnsupportedIntentError,
)
from checkout_assistant.protocols.agent_bus import AgentBus, BusAgent, make_envelope


class EchoAgent(BusAgent):
    def __init__(self, name):
        super().__init__(name)
        self.seen = []
        self.on("echo", self._echo)

    async def _echo(self, payload):
        self.seen.append(payload)
        return {"from": self.name, "payload": payload}


@pytest.fixture
def bus():
    bus = AgentBus()
    bus.register("orchestrator", EchoAgent("orchestrator"))
    bus.register("a", EchoAgent("a"))
    bus.register("b", EchoAgent("b"))
    return bus


class TestSend:
    async def test_request_reply(self, bus):
        reply = await bus.request("orchestrator", "a", "echo", {"x": 1})
        assert reply == {"from": "a", "payload": {"x": 1}}

    async def test_envelope_as_camel_case_dict(self, bus):
        envelope = make_envelope("orchestrator", "b", "echo", {"x": 2})
        reply = await bus.send(envelope.model_dump(by_alias=True))
        assert reply["from"] == "b"

    async def test_ping_needs_no_payload(self, bus):
        assert await bus.ping("orchestrator", "a") == {"status": "ok", "agent": "a"}

    async def test_missing_payload_rejected(self, bus):
        with pytest.raises(InvalidEnvelopeError) as exc_info:
            await bus.send(make_envelope("orchestrator", "a", "echo", None))
        assert exc_info.value.context["field"] == "payload"

    @pytest.mark.parametrize(
        "missing",
        ["message_id", "from_agent", "to_agent", "message_type", "intent", "timestamp"],
    )
    async def test_every_header_is_required(self, bus, missing):
        envelope = make_envelope("orchestrator", "a", "echo", {})
        setattr(envelope, missing, None)
        with pytest.raises(InvalidEnvelopeError):
            await bus.send(envelope)

    async def test_unknown_agent(self, bus):
        with pytest.raises(AgentNotRegisteredError) as exc_info:
            await bus.request("orchestrator", "nobody", "echo", {})
        assert exc_info.value.kind == "agent_not_registered"

    async def test_unknown_intent(self, bus):
        with pytest.raises(UnsupportedIntentError):
            await bus.request("orchestrator", "a", "dance", {})


class TestBroadcast:
    async def test_skips_sender(self, bus):
        replies = await bus.broadcast("orchestrator", "request", "echo", {"n": 1})
        assert [reply["from"] for reply in replies] == ["a", "b"]

    async def test_skips_agents_without_intent(self, bus):
        class Mute(BusAgent):
            pass

        bus.register("c", Mute("c"))
        replies = await bus.broadcast("orchestrator", "request", "echo", {"n": 1})
        assert len(replies) == 2

    async def test_ping_everyone(self, bus):
        replies = await bus.broadcast("orchestrator", "ping", "ping")
        assert {reply["agent"] for reply in replies} == {"a", "b"}
