"""Per-user checkout session state machine.

State diagram::

    (none) --start--> collecting_info
    collecting_info --invalid turn--> validation_error --valid turn--> collecting_info
    collecting_info --all required collected--> ready_for_checkout
    ready_for_checkout --complete--> completed
    any non-terminal --cancel--> cancelled
    any non-terminal --start(again)--> old: superseded, new: collecting_info
    any non-terminal --fatal error--> failed

Terminal states never transition again.  Every operation addresses the
user's newest session; passing ``session_id`` additionally pins the call to
that session so a stale caller cannot touch its successor.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Awaitable, TypeVar

import structlog

from checkout_assistant.errors import (
    CheckoutError,
    InvalidTransitionError,
    NoActiveSessionError,
    StoreFailureError,
)
from checkout_assistant.models import (
    CheckoutProcessModel,
    CheckoutSession,
    DeepLinkArtifact,
    SessionState,
    TurnRecord,
    ValidationIssue,
)
from checkout_assistant.sessions.store import Clock, SessionStore
from checkout_assistant.validators import missing_fields

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_NON_TERMINAL_EXITS = {SessionState.CANCELLED, SessionState.SUPERSEDED, SessionState.FAILED}

ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.COLLECTING_INFO: {
        SessionState.COLLECTING_INFO,
        SessionState.VALIDATION_ERROR,
        SessionState.READY_FOR_CHECKOUT,
        *_NON_TERMINAL_EXITS,
    },
    SessionState.VALIDATION_ERROR: {
        SessionState.COLLECTING_INFO,
        SessionState.VALIDATION_ERROR,
        *_NON_TERMINAL_EXITS,
    },
    SessionState.READY_FOR_CHECKOUT: {SessionState.COMPLETED, *_NON_TERMINAL_EXITS},
    SessionState.COMPLETED: set(),
    SessionState.CANCELLED: set(),
    SessionState.SUPERSEDED: set(),
    SessionState.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SessionStateMachine:
    """Applies lifecycle transitions to sessions held in a :class:`SessionStore`."""

    def __init__(self, store: SessionStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, user_id: str) -> CheckoutSession | None:
        """Newest session of *user_id* in any state, or ``None``."""
        return await self._guard(self._store.latest_for_user(user_id))

    async def get_session(self, session_id: str) -> CheckoutSession | None:
        return await self._guard(self._store.get(session_id))

    async def list_sessions(self) -> list[CheckoutSession]:
        return await self._guard(self._store.list_sessions())

    async def require_live(
        self,
        user_id: str,
        session_id: str | None = None,
    ) -> CheckoutSession:
        """Return the user's non-terminal session or raise ``no_active_session``."""
        session = await self.get(user_id)
        if session is None or session.state.is_terminal:
            raise NoActiveSessionError(f"No active checkout session for '{user_id}'", user_id=user_id)
        if session_id is not None and session.session_id != session_id:
            raise NoActiveSessionError(
                f"Session '{session_id}' is no longer the active session of '{user_id}'",
                user_id=user_id,
            )
        return session

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, user_id: str, product_key: str, cpm_ref: str) -> CheckoutSession:
        """Start a fresh session, superseding any live one for the user."""
        existing = await self.get(user_id)
        if existing is not None and not existing.state.is_terminal:
            self._transition(existing, SessionState.SUPERSEDED)
            existing.disposition = SessionState.SUPERSEDED.value
            await self._put(existing)
            logger.info(
                "session_superseded",
                session_id=existing.session_id,
                user_id=user_id,
            )

        now = self._clock()
        session = CheckoutSession(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            product_key=product_key,
            state=SessionState.COLLECTING_INFO,
            cpm_ref=cpm_ref,
            started_at=now,
            last_updated_at=now,
        )
        await self._put(session)
        logger.info(
            "session_created",
            session_id=session.session_id,
            user_id=user_id,
            product_key=product_key,
            cpm_ref=cpm_ref,
        )
        return session

    # ------------------------------------------------------------------
    # Turn bookkeeping
    # ------------------------------------------------------------------

    async def record(
        self,
        user_id: str,
        newly_collected: dict[str, str],
        validation_errors: list[ValidationIssue],
        *,
        utterance: str = "",
        extracted: dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> CheckoutSession:
        """Merge accepted values and append a turn record.

        With errors the session moves to ``validation_error`` without
        advancing its step; otherwise it is (back in) ``collecting_info``.
        """
        session = await self.require_live(user_id, session_id)
        if not session.state.accepts_turns:
            raise NoActiveSessionError(
                f"Session '{session.session_id}' is not collecting information",
                user_id=user_id,
            )

        target = SessionState.VALIDATION_ERROR if validation_errors else SessionState.COLLECTING_INFO
        self._transition(session, target)
        session.collected.update(newly_collected)
        session.history.append(
            TurnRecord(
                turn_index=len(session.history),
                utterance=utterance,
                extracted=dict(extracted or {}),
                validation_errors=list(validation_errors),
                newly_collected=list(newly_collected),
                timestamp=self._clock(),
            )
        )
        await self._touch_and_put(session)
        logger.debug(
            "session_turn_recorded",
            session_id=session.session_id,
            turn_index=len(session.history) - 1,
            newly_collected=list(newly_collected),
            errors=len(validation_errors),
        )
        return session

    async def attach_prompt(self, user_id: str, prompt: str, session_id: str | None = None) -> None:
        """Store the prompt emitted for the most recent turn."""
        session = await self.get(user_id)
        if session is None or not session.history:
            return
        if session_id is not None and session.session_id != session_id:
            return
        session.history[-1].prompt_emitted = prompt
        await self._put(session)

    async def advance_if_step_complete(
        self,
        user_id: str,
        cpm: CheckoutProcessModel,
        session_id: str | None = None,
    ) -> CheckoutSession:
        """Move past every leading step whose required fields are all collected.

        Steps advance strictly forward.  Moving past the last step makes the
        session ``ready_for_checkout``.
        """
        session = await self.require_live(user_id, session_id)
        if session.state != SessionState.COLLECTING_INFO:
            return session

        steps = cpm.ordered_steps()
        start_index = session.step_index
        while session.step_index < len(steps) and not missing_fields(
            steps[session.step_index], session.collected
        ):
            session.step_index += 1

        if session.step_index >= len(steps):
            self._transition(session, SessionState.READY_FOR_CHECKOUT)
            logger.info("session_ready_for_checkout", session_id=session.session_id)

        if session.step_index != start_index or session.state == SessionState.READY_FOR_CHECKOUT:
            await self._touch_and_put(session)
            logger.debug(
                "session_step_advanced",
                session_id=session.session_id,
                from_step=start_index,
                to_step=session.step_index,
            )
        return session

    async def set_deeplink(
        self,
        user_id: str,
        artifact: DeepLinkArtifact,
        session_id: str | None = None,
    ) -> CheckoutSession:
        session = await self.require_live(user_id, session_id)
        session.deeplink = artifact
        await self._touch_and_put(session)
        return session

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def complete(self, user_id: str, session_id: str | None = None) -> CheckoutSession:
        session = await self.require_live(user_id, session_id)
        self._transition(session, SessionState.COMPLETED)
        session.disposition = SessionState.COMPLETED.value
        await self._touch_and_put(session)
        logger.info("session_completed", session_id=session.session_id, user_id=user_id)
        return session

    async def cancel(self, user_id: str) -> CheckoutSession | None:
        """Cancel the live session; a terminal or missing session is a no-op."""
        session = await self.get(user_id)
        if session is None or session.state.is_terminal:
            return session
        self._transition(session, SessionState.CANCELLED)
        session.disposition = SessionState.CANCELLED.value
        await self._touch_and_put(session)
        logger.info("session_cancelled", session_id=session.session_id, user_id=user_id)
        return session

    async def fail(self, user_id: str, reason: str, session_id: str | None = None) -> CheckoutSession | None:
        session = await self.get(user_id)
        if session is None or session.state.is_terminal:
            return session
        if session_id is not None and session.session_id != session_id:
            return session
        self._transition(session, SessionState.FAILED)
        session.disposition = f"{SessionState.FAILED.value}: {reason}"
        await self._touch_and_put(session)
        logger.warning("session_failed", session_id=session.session_id, reason=reason)
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(session: CheckoutSession, target: SessionState) -> None:
        if target not in ALLOWED_TRANSITIONS[session.state]:
            raise InvalidTransitionError(
                f"Cannot move session '{session.session_id}' from "
                f"'{session.state.value}' to '{target.value}'"
            )
        session.state = target

    async def _touch_and_put(self, session: CheckoutSession) -> None:
        session.last_updated_at = self._clock()
        await self._put(session)

    async def _put(self, session: CheckoutSession) -> None:
        await self._guard(self._store.put(session))

    @staticmethod
    async def _guard(call: Awaitable[T]) -> T:
        try:
            return await call
        except CheckoutError:
            raise
        except Exception as exc:
            logger.error("session_store_failure", error=str(exc))
            raise StoreFailureError(f"Session store unavailable: {exc}") from exc
