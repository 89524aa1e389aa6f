"""Checkout session storage and lifecycle."""

from checkout_assistant.sessions.machine import SessionStateMachine
from checkout_assistant.sessions.store import InMemorySessionStore, SessionStore

__all__ = ["InMemorySessionStore", "SessionStateMachine", "SessionStore"]
