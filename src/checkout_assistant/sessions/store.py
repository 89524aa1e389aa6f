"""Session store interface and its in-memory implementation.

The store owns session expiry: a session whose ``last_updated_at`` is older
than the TTL is discarded on access and reads as ``None``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog

from checkout_assistant.models import CheckoutSession

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionStore(Protocol):
    """Persistence interface for checkout sessions.

    Implementations must be strongly consistent per session and return
    copies, so callers never observe each other's in-flight mutations.
    """

    async def get(self, session_id: str) -> CheckoutSession | None: ...

    async def latest_for_user(self, user_id: str) -> CheckoutSession | None: ...

    async def put(self, session: CheckoutSession) -> None: ...

    async def list_sessions(self) -> list[CheckoutSession]: ...


class InMemorySessionStore:
    """Process-local session store with inactivity expiry."""

    def __init__(self, ttl_seconds: int = 24 * 60 * 60, clock: Clock | None = None) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utcnow
        self._sessions: dict[str, CheckoutSession] = {}
        self._latest_by_user: dict[str, str] = {}

    def _expired(self, session: CheckoutSession) -> bool:
        return self._clock() - session.last_updated_at > self._ttl

    def _discard(self, session: CheckoutSession) -> None:
        self._sessions.pop(session.session_id, None)
        if self._latest_by_user.get(session.user_id) == session.session_id:
            self._latest_by_user.pop(session.user_id, None)
        logger.info(
            "session_expired",
            session_id=session.session_id,
            user_id=session.user_id,
        )

    async def get(self, session_id: str) -> CheckoutSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session):
            self._discard(session)
            return None
        return session.model_copy(deep=True)

    async def latest_for_user(self, user_id: str) -> CheckoutSession | None:
        session_id = self._latest_by_user.get(user_id)
        if session_id is None:
            return None
        return await self.get(session_id)

    async def put(self, session: CheckoutSession) -> None:
        # A session id seen for the first time is the user's newest session.
        is_new = session.session_id not in self._sessions
        self._sessions[session.session_id] = session.model_copy(deep=True)
        if is_new or session.user_id not in self._latest_by_user:
            self._latest_by_user[session.user_id] = session.session_id

    async def list_sessions(self) -> list[CheckoutSession]:
        await self.purge_expired()
        return [session.model_copy(deep=True) for session in self._sessions.values()]

    async def purge_expired(self) -> int:
        """Drop every expired session; returns how many were removed."""
        expired = [s for s in self._sessions.values() if self._expired(s)]
        for session in expired:
            self._discard(session)
        return len(expired)
