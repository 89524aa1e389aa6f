"""Checkout orchestrator: the public surface of the checkout core.

Ties the session state machine to the collaborators reached over the agent
bus (process models, extraction, prompts, deep-links) and runs each
``turn`` through the compiled LangGraph workflow.  Calls that mutate a
user's session are serialised per user; a concurrent call is rejected with
``turn_in_progress``.  ``cancel`` never waits.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from typing import Any, AsyncIterator, Callable

import structlog

from checkout_assistant.agents.deeplink_agent import AGENT_NAME as DEEPLINK
from checkout_assistant.agents.deeplink_agent import DeepLinkAgent, DeepLinkBuilder
from checkout_assistant.agents.extraction_agent import AGENT_NAME as EXTRACTION
from checkout_assistant.agents.extraction_agent import ExtractionAdapter, ExtractionAgent
from checkout_assistant.agents.process_model_agent import AGENT_NAME as PROCESS_MODELS
from checkout_assistant.agents.process_model_agent import ProcessModelAgent
from checkout_assistant.agents.prompt_agent import AGENT_NAME as PROMPTS
from checkout_assistant.agents.prompt_agent import PromptAgent, PromptComposer
from checkout_assistant.config import Settings
from checkout_assistant.errors import (
    CheckoutNotReadyError,
    NoActiveSessionError,
    StoreFailureError,
    TurnInProgressError,
)
from checkout_assistant.models import (
    CancelResult,
    CheckoutProcessModel,
    CheckoutSession,
    CompleteResult,
    DeepLinkResult,
    SessionState,
    SessionSummary,
    StartResult,
    TurnResult,
)
from checkout_assistant.orchestrator.graph import (
    ORCHESTRATOR,
    RESULT_CANCELLED,
    RESULT_DEEPLINK_ERROR,
    compile_turn_graph,
)
from checkout_assistant.orchestrator.state import TurnGraphState
from checkout_assistant.process_model.store import ProcessModelStore
from checkout_assistant.protocols.agent_bus import AgentBus
from checkout_assistant.protocols.llm_client import LLMCapability, build_llm_client
from checkout_assistant.sessions.machine import SessionStateMachine
from checkout_assistant.sessions.store import InMemorySessionStore, SessionStore
from checkout_assistant.validators import compute_progress, missing_fields, required_fields_of

logger = structlog.get_logger(__name__)


class CheckoutOrchestrator:
    """Drives checkout dialogs for many users concurrently."""

    def __init__(
        self,
        settings: Settings,
        bus: AgentBus,
        machine: SessionStateMachine,
    ) -> None:
        self._settings = settings
        self._bus = bus
        self._machine = machine
        self._locks: dict[str, asyncio.Lock] = {}
        self._graph = compile_turn_graph(
            bus,
            machine,
            locale=settings.prompt_locale,
            lookahead=settings.extraction_lookahead,
            storefront_root=settings.deeplink_root_url,
        )

    @property
    def bus(self) -> AgentBus:
        return self._bus

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, user_id: str, product_key: str) -> StartResult:
        """Open a checkout session for *product_key*, superseding any live one.

        Raises
        ------
        NoProcessModelError
            If neither the product's nor the default process model exists.
        TurnInProgressError
            If another call is operating on the user's session.
        """
        async with self._exclusive(user_id):
            cpm = await self._load_process_model(product_key)
            session = await self._machine.create(user_id, product_key, cpm.product_key)
            try:
                # Leading steps without required fields are passed immediately.
                session = await self._machine.advance_if_step_complete(
                    user_id, cpm, session.session_id
                )
                step = cpm.step_at(session.step_index)
                missing = missing_fields(step, session.collected)
                if session.state == SessionState.READY_FOR_CHECKOUT:
                    prompt = await self._prompt(
                        "readiness_summary",
                        collected=dict(session.collected),
                        product=cpm.product_info,
                        fields=cpm.field_map(),
                    )
                else:
                    prompt = await self._prompt(
                        "next_field",
                        missing_fields=missing,
                        product=cpm.product_info,
                        collected=dict(session.collected),
                    )
            except StoreFailureError:
                await self._fail(user_id, session.session_id, "store_failure")
                raise

            logger.info(
                "checkout_started",
                user_id=user_id,
                session_id=session.session_id,
                product_key=product_key,
                cpm_ref=cpm.product_key,
            )
            return StartResult(
                session_id=session.session_id,
                state=session.state.value,
                prompt=prompt,
                required_fields=required_fields_of(step),
                missing_fields=missing,
                progress=self._progress(cpm, session),
            )

    async def turn(self, user_id: str, utterance: str) -> TurnResult:
        """Process one utterance against the user's live session.

        Raises
        ------
        NoActiveSessionError
            If the user has no session accepting turns.
        TurnInProgressError
            If another call is operating on the user's session.
        StoreFailureError
            If a store is unavailable; the session is failed first.
        """
        async with self._exclusive(user_id):
            session = await self._machine.require_live(user_id)
            if not session.state.accepts_turns:
                raise NoActiveSessionError(
                    f"Session '{session.session_id}' is '{session.state.value}' "
                    "and does not accept turns",
                    user_id=user_id,
                )

            try:
                cpm = await self._load_process_model(session.cpm_ref)
                initial: TurnGraphState = {
                    "user_id": user_id,
                    "session_id": session.session_id,
                    "utterance": utterance,
                    "cpm": cpm,
                    "session": session,
                    "target_fields": [],
                    "extracted": {},
                    "accepted": {},
                    "errors": [],
                    "result_state": "",
                    "prompt": "",
                    "missing_fields": [],
                    "deeplink": None,
                    "error": None,
                    "aborted": False,
                }
                final = await self._graph.ainvoke(initial)
            except StoreFailureError:
                await self._fail(user_id, session.session_id, "store_failure")
                raise

            result_session: CheckoutSession = final["session"]
            progress = self._progress(cpm, result_session)
            if final.get("aborted"):
                return TurnResult(state=RESULT_CANCELLED, progress=progress)

            result = TurnResult(
                state=final["result_state"],
                prompt=final.get("prompt", ""),
                progress=progress,
                errors=final.get("errors", []),
                processed_fields=list(final.get("accepted", {})),
                missing_fields=final.get("missing_fields", []),
                deeplink=final.get("deeplink"),
                error=final.get("error"),
            )
            logger.info(
                "turn_processed",
                user_id=user_id,
                session_id=session.session_id,
                state=result.state,
                processed=result.processed_fields,
                errors=len(result.errors),
                progress=progress,
            )
            return result

    async def complete(self, user_id: str) -> CompleteResult:
        """Finish a ready session, building the deep-link if none exists yet.

        When the deep-link cannot be built the result state is
        ``deeplink_error`` and the session stays ``ready_for_checkout``.

        Raises
        ------
        NoActiveSessionError
            If the user has no live session.
        CheckoutNotReadyError
            If required fields are still missing.
        """
        async with self._exclusive(user_id):
            session = await self._machine.require_live(user_id)
            if session.state != SessionState.READY_FOR_CHECKOUT:
                raise CheckoutNotReadyError(
                    f"Session '{session.session_id}' is '{session.state.value}', "
                    "not ready for checkout",
                    user_id=user_id,
                )

            try:
                artifact = session.deeplink
                if artifact is None:
                    cpm = await self._load_process_model(session.cpm_ref)
                    built: DeepLinkResult = await self._bus.request(
                        ORCHESTRATOR,
                        DEEPLINK,
                        "build",
                        {
                            "base_url": cpm.base_url,
                            "product_key": session.product_key,
                            "collected": dict(session.collected),
                        },
                    )
                    if not built.ok or built.artifact is None:
                        prompt = await self._prompt(
                            "deeplink_apology",
                            reason=built.error or "",
                            storefront=self._settings.deeplink_root_url or cpm.base_url,
                        )
                        logger.warning(
                            "complete_deeplink_failed",
                            session_id=session.session_id,
                            error=built.error,
                        )
                        return CompleteResult(
                            state=RESULT_DEEPLINK_ERROR,
                            session_id=session.session_id,
                            prompt=prompt,
                            error=built.error,
                        )
                    artifact = built.artifact
                    await self._machine.set_deeplink(user_id, artifact, session.session_id)

                completed = await self._machine.complete(user_id, session.session_id)
            except StoreFailureError:
                await self._fail(user_id, session.session_id, "store_failure")
                raise

            return CompleteResult(
                state=completed.state.value,
                session_id=completed.session_id,
                deeplink=artifact,
                completed_at=completed.last_updated_at,
            )

    async def cancel(self, user_id: str) -> CancelResult:
        """Cancel the user's live session.

        Cancelling when the session is already terminal (or absent) changes
        nothing and returns the existing snapshot.
        """
        session = await self._machine.cancel(user_id)
        if session is None:
            return CancelResult()
        return CancelResult(
            state=session.state.value,
            session_id=session.session_id,
            snapshot=session,
        )

    async def inspect(self, user_id: str) -> CheckoutSession | None:
        """Snapshot of the user's newest session, or ``None``."""
        return await self._machine.get(user_id)

    async def inspect_session(self, session_id: str) -> CheckoutSession | None:
        return await self._machine.get_session(session_id)

    async def active_sessions(self) -> list[SessionSummary]:
        """Summaries of every non-terminal session."""
        summaries: list[SessionSummary] = []
        models: dict[str, CheckoutProcessModel] = {}
        for session in await self._machine.list_sessions():
            if session.state.is_terminal:
                continue
            cpm = models.get(session.cpm_ref)
            if cpm is None:
                cpm = await self._load_process_model(session.cpm_ref)
                models[session.cpm_ref] = cpm
            summaries.append(
                SessionSummary(
                    user_id=session.user_id,
                    session_id=session.session_id,
                    product_key=session.product_key,
                    state=session.state,
                    progress=self._progress(cpm, session),
                    started_at=session.started_at,
                    last_updated_at=session.last_updated_at,
                )
            )
        summaries.sort(key=lambda summary: summary.last_updated_at, reverse=True)
        return summaries

    # ------------------------------------------------------------------
    # Process model administration
    # ------------------------------------------------------------------

    async def process_model(self, product_key: str) -> dict[str, Any] | None:
        """The stored blob for exactly *product_key*, without fallback."""
        return await self._bus.request(
            ORCHESTRATOR, PROCESS_MODELS, "load_blob", {"product_key": product_key}
        )

    async def save_process_model(
        self,
        product_key: str,
        blob: CheckoutProcessModel | dict[str, Any],
    ) -> CheckoutProcessModel:
        return await self._bus.request(
            ORCHESTRATOR,
            PROCESS_MODELS,
            "save",
            {"product_key": product_key, "process_model": blob},
        )

    async def process_model_keys(self) -> list[str]:
        return await self._bus.request(ORCHESTRATOR, PROCESS_MODELS, "list_keys", {})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _exclusive(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        if lock.locked():
            logger.info("turn_rejected_in_progress", user_id=user_id)
            raise TurnInProgressError(
                f"Another request for '{user_id}' is in progress",
                user_id=user_id,
            )
        try:
            async with lock:
                yield
        finally:
            # Contended calls are rejected, never queued, so nobody waits on it.
            self._locks.pop(user_id, None)

    async def _load_process_model(self, product_key: str) -> CheckoutProcessModel:
        return await self._bus.request(
            ORCHESTRATOR, PROCESS_MODELS, "load", {"product_key": product_key}
        )

    async def _prompt(self, intent: str, **payload: Any) -> str:
        return await self._bus.request(ORCHESTRATOR, PROMPTS, intent, payload)

    def _progress(self, cpm: CheckoutProcessModel, session: CheckoutSession) -> int:
        return compute_progress(
            cpm,
            session.collected,
            self._settings.progress_denominator_includes_optional,
        )

    async def _fail(self, user_id: str, session_id: str, reason: str) -> None:
        try:
            await self._machine.fail(user_id, reason, session_id)
        except StoreFailureError:
            logger.error("session_fail_unrecorded", user_id=user_id, session_id=session_id)


def create_orchestrator(
    settings: Settings,
    *,
    process_models: ProcessModelStore | None = None,
    session_store: SessionStore | None = None,
    llm: LLMCapability | None = None,
    clock: Callable[[], datetime] | None = None,
) -> CheckoutOrchestrator:
    """Wire the default collaborators onto a fresh bus.

    *llm* overrides the client built from settings; it is ignored when
    ``llm_enabled`` is false.
    """
    if not settings.llm_enabled:
        llm = None
    elif llm is None:
        llm = build_llm_client(settings)

    timeout = settings.llm_timeout_seconds
    bus = AgentBus()
    bus.register(PROCESS_MODELS, ProcessModelAgent(process_models or ProcessModelStore()))
    bus.register(EXTRACTION, ExtractionAgent(ExtractionAdapter(llm, timeout)))
    bus.register(
        PROMPTS,
        PromptAgent(PromptComposer(llm, settings.prompt_locale, timeout)),
    )
    bus.register(
        DEEPLINK,
        DeepLinkAgent(
            DeepLinkBuilder(
                settings.deeplink_root_url,
                settings.deeplink_checkout_path,
                clock=clock,
            )
        ),
    )

    store = session_store or InMemorySessionStore(settings.session_ttl_seconds, clock=clock)
    machine = SessionStateMachine(store, clock=clock)

    logger.info(
        "orchestrator_created",
        llm=type(llm).__name__ if llm is not None else None,
        locale=settings.prompt_locale,
        agents=bus.agents,
    )
    return CheckoutOrchestrator(settings, bus, machine)
