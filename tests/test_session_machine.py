"""Tests for the session store and the session state machine."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import scenario_blob

from checkout_assistant.errors import (
    InvalidTransitionError,
    NoActiveSessionError,
    StoreFailureError,
)
from checkout_assistant.models import CheckoutProcessModel, SessionState, ValidationIssue
from checkout_assistant.sessions import InMemorySessionStore, SessionStateMachine


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class BrokenStore(InMemorySessionStore):
    async def put(self, session):
        raise OSError("disk full")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine(clock):
    return SessionStateMachine(InMemorySessionStore(ttl_seconds=3600, clock=clock), clock=clock)


@pytest.fixture
def cpm():
    return CheckoutProcessModel.model_validate(scenario_blob())


class TestCreate:
    async def test_new_session(self, machine):
        session = await machine.create("u1", "p1", "default")
        assert session.state == SessionState.COLLECTING_INFO
        assert session.step_index == 0
        assert (await machine.get("u1")).session_id == session.session_id

    async def test_start_again_supersedes(self, machine):
        first = await machine.create("u1", "p1", "default")
        second = await machine.create("u1", "p2", "default")
        old = await machine.get_session(first.session_id)
        assert old.state == SessionState.SUPERSEDED
        assert old.disposition == "superseded"
        assert (await machine.get("u1")).session_id == second.session_id

    async def test_users_are_independent(self, machine):
        await machine.create("u1", "p1", "default")
        await machine.create("u2", "p1", "default")
        assert (await machine.get("u1")).state == SessionState.COLLECTING_INFO
        assert (await machine.get("u2")).state == SessionState.COLLECTING_INFO


class TestTurns:
    async def test_record_and_advance(self, machine, cpm):
        await machine.create("u1", "p1", "default")
        session = await machine.record("u1", {"name": "João", "email": "joao@ex.com"}, [])
        assert session.history[0].newly_collected == ["name", "email"]

        session = await machine.advance_if_step_complete("u1", cpm)
        assert session.step_index == 1
        assert session.state == SessionState.COLLECTING_INFO

    async def test_validation_error_keeps_step(self, machine, cpm):
        await machine.create("u1", "p1", "default")
        issue = ValidationIssue(field="email", message="bad")
        session = await machine.record("u1", {"name": "João"}, [issue])
        assert session.state == SessionState.VALIDATION_ERROR
        assert session.collected == {"name": "João"}

        session = await machine.advance_if_step_complete("u1", cpm)
        assert session.step_index == 0

        session = await machine.record("u1", {"email": "joao@ex.com"}, [])
        assert session.state == SessionState.COLLECTING_INFO
        assert [turn.turn_index for turn in session.history] == [0, 1]

    async def test_advance_over_several_steps_to_ready(self, machine, cpm):
        await machine.create("u1", "p1", "default")
        await machine.record(
            "u1",
            {
                "name": "João",
                "email": "joao@ex.com",
                "cep": "01310-100",
                "address": "Av. Paulista 1000",
                "paymentType": "pix",
            },
            [],
        )
        session = await machine.advance_if_step_complete("u1", cpm)
        assert session.step_index == 3
        assert session.state == SessionState.READY_FOR_CHECKOUT

        with pytest.raises(NoActiveSessionError):
            await machine.record("u1", {}, [])

    async def test_pinned_session_id(self, machine):
        first = await machine.create("u1", "p1", "default")
        await machine.create("u1", "p1", "default")
        with pytest.raises(NoActiveSessionError):
            await machine.record("u1", {}, [], session_id=first.session_id)


class TestTerminal:
    async def test_complete_requires_ready(self, machine):
        await machine.create("u1", "p1", "default")
        with pytest.raises(InvalidTransitionError):
            await machine.complete("u1")

    async def test_cancel_is_idempotent(self, machine, clock):
        await machine.create("u1", "p1", "default")
        first = await machine.cancel("u1")
        clock.advance(seconds=5)
        second = await machine.cancel("u1")
        assert first.state == SessionState.CANCELLED
        assert first == second

    async def test_cancel_without_session(self, machine):
        assert await machine.cancel("nobody") is None

    async def test_terminal_sessions_reject_turns(self, machine):
        await machine.create("u1", "p1", "default")
        await machine.cancel("u1")
        with pytest.raises(NoActiveSessionError):
            await machine.require_live("u1")

    async def test_fail(self, machine):
        await machine.create("u1", "p1", "default")
        session = await machine.fail("u1", "store_failure")
        assert session.state == SessionState.FAILED
        assert session.disposition == "failed: store_failure"


class TestExpiry:
    async def test_expired_session_reads_as_none(self, machine, clock):
        await machine.create("u1", "p1", "default")
        clock.advance(minutes=59)
        assert await machine.get("u1") is not None
        clock.advance(minutes=2)
        assert await machine.get("u1") is None
        with pytest.raises(NoActiveSessionError):
            await machine.require_live("u1")

    async def test_activity_extends_lifetime(self, machine, clock):
        await machine.create("u1", "p1", "default")
        clock.advance(minutes=50)
        await machine.record("u1", {"name": "João"}, [])
        clock.advance(minutes=50)
        assert await machine.get("u1") is not None

    async def test_purge(self, clock):
        store = InMemorySessionStore(ttl_seconds=60, clock=clock)
        machine = SessionStateMachine(store, clock=clock)
        await machine.create("u1", "p1", "default")
        await machine.create("u2", "p1", "default")
        clock.advance(minutes=5)
        assert await store.purge_expired() == 2
        assert await machine.list_sessions() == []


class TestStoreFailure:
    async def test_put_failure_is_wrapped(self, clock):
        machine = SessionStateMachine(BrokenStore(clock=clock), clock=clock)
        with pytest.raises(StoreFailureError):
            await machine.create("u1", "p1", "default")
