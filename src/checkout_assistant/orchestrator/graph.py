"""LangGraph StateGraph for one checkout turn.

Nodes
-----
extract       -- Ask the extraction agent for values of the target fields
validate      -- Run the field validators on every extracted value
record        -- Merge accepted values into the session and log the turn
advance       -- Move past every step whose required fields are collected
recover       -- Compose the validation-error recovery prompt
finalize      -- Build the deep-link and compose the readiness summary
request_more  -- Compose the next-field request
abort         -- The session was cancelled or superseded mid-turn

Edges (with conditional routing)
------
extract -> validate | abort
validate -> record
record -> recover (if errors) | advance | abort
advance -> finalize (if ready_for_checkout) | request_more

Every node that awaits a collaborator re-reads the session afterwards and
aborts the turn if the session is no longer live.
"""

from __future__ import annotations

import structlog
from langgraph.graph import END, StateGraph

from checkout_assistant.agents.deeplink_agent import AGENT_NAME as DEEPLINK
from checkout_assistant.agents.extraction_agent import AGENT_NAME as EXTRACTION
from checkout_assistant.agents.prompt_agent import AGENT_NAME as PROMPTS
from checkout_assistant.errors import NoActiveSessionError
from checkout_assistant.models import CheckoutSession, DeepLinkResult, SessionState
from checkout_assistant.orchestrator.state import TurnGraphState
from checkout_assistant.protocols.agent_bus import AgentBus
from checkout_assistant.sessions.machine import SessionStateMachine
from checkout_assistant.validators import missing_fields, missing_fields_from, validate_field

logger = structlog.get_logger(__name__)

ORCHESTRATOR = "orchestrator"
RESULT_CANCELLED = "cancelled"
RESULT_DEEPLINK_ERROR = "deeplink_error"


async def _live_session(machine: SessionStateMachine, state: TurnGraphState) -> CheckoutSession | None:
    """The turn's session if it is still the user's live session."""
    session = await machine.get(state["user_id"])
    if session is None or session.session_id != state["session_id"] or session.state.is_terminal:
        logger.info(
            "turn_aborted",
            user_id=state["user_id"],
            session_id=state["session_id"],
            observed=session.state.value if session else None,
        )
        return None
    return session


def _aborted(state: TurnGraphState) -> TurnGraphState:
    return {**state, "aborted": True, "result_state": RESULT_CANCELLED, "prompt": ""}


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_extract_node(bus: AgentBus, machine: SessionStateMachine, lookahead: bool):
    """Create the *extract* node function."""

    async def extract_node(state: TurnGraphState) -> TurnGraphState:
        session = state["session"]
        cpm = state["cpm"]

        if lookahead:
            targets = missing_fields_from(cpm, session.step_index, session.collected)
        else:
            targets = missing_fields(cpm.step_at(session.step_index), session.collected)

        extracted = await bus.request(
            ORCHESTRATOR,
            EXTRACTION,
            "extract",
            {
                "utterance": state.get("utterance", ""),
                "target_fields": targets,
                "prior_collected": dict(session.collected),
            },
        )

        live = await _live_session(machine, state)
        if live is None:
            return _aborted(state)
        return {**state, "session": live, "target_fields": targets, "extracted": extracted or {}}

    return extract_node


def _make_validate_node(locale: str):
    """Create the *validate* node function."""

    async def validate_node(state: TurnGraphState) -> TurnGraphState:
        extracted = state.get("extracted", {})
        accepted: dict[str, str] = {}
        errors = []
        for field in state.get("target_fields", []):
            value = extracted.get(field.name)
            if value is None:
                continue
            normalized, issue = validate_field(field, value, locale)
            if issue is not None:
                errors.append(issue)
            elif normalized:
                accepted[field.name] = normalized

        logger.debug(
            "turn_validated",
            session_id=state["session_id"],
            accepted=list(accepted),
            rejected=[issue.field for issue in errors],
        )
        return {**state, "accepted": accepted, "errors": errors}

    return validate_node


def _make_record_node(machine: SessionStateMachine):
    """Create the *record* node function."""

    async def record_node(state: TurnGraphState) -> TurnGraphState:
        try:
            session = await machine.record(
                state["user_id"],
                state.get("accepted", {}),
                state.get("errors", []),
                utterance=state.get("utterance", ""),
                extracted=state.get("extracted", {}),
                session_id=state["session_id"],
            )
        except NoActiveSessionError:
            return _aborted(state)
        return {**state, "session": session}

    return record_node


def _make_advance_node(machine: SessionStateMachine):
    """Create the *advance* node function."""

    async def advance_node(state: TurnGraphState) -> TurnGraphState:
        session = await machine.advance_if_step_complete(
            state["user_id"], state["cpm"], state["session_id"]
        )
        return {**state, "session": session}

    return advance_node


async def _conclude(
    machine: SessionStateMachine,
    state: TurnGraphState,
    prompt: str,
    result_state: str,
    **updates: object,
) -> TurnGraphState:
    live = await _live_session(machine, state)
    if live is None:
        return _aborted(state)
    await machine.attach_prompt(state["user_id"], prompt, state["session_id"])
    return {**state, **updates, "session": live, "prompt": prompt, "result_state": result_state}  # type: ignore[typeddict-item]


def _make_recover_node(bus: AgentBus, machine: SessionStateMachine):
    """Create the *recover* node -- asks the shopper to fix rejected values."""

    async def recover_node(state: TurnGraphState) -> TurnGraphState:
        prompt = await bus.request(
            ORCHESTRATOR,
            PROMPTS,
            "validation_recovery",
            {"errors": state.get("errors", []), "fields": state["cpm"].field_map()},
        )
        return await _conclude(machine, state, prompt, SessionState.VALIDATION_ERROR.value)

    return recover_node


def _make_request_more_node(bus: AgentBus, machine: SessionStateMachine):
    """Create the *request_more* node -- asks for the current step's fields."""

    async def request_more_node(state: TurnGraphState) -> TurnGraphState:
        session = state["session"]
        cpm = state["cpm"]
        missing = missing_fields(cpm.step_at(session.step_index), session.collected)
        prompt = await bus.request(
            ORCHESTRATOR,
            PROMPTS,
            "next_field",
            {
                "missing_fields": missing,
                "product": cpm.product_info,
                "collected": dict(session.collected),
            },
        )
        return await _conclude(
            machine,
            state,
            prompt,
            SessionState.COLLECTING_INFO.value,
            missing_fields=missing,
        )

    return request_more_node


def _make_finalize_node(bus: AgentBus, machine: SessionStateMachine, storefront_root: str):
    """Create the *finalize* node -- deep-link plus readiness summary."""

    async def finalize_node(state: TurnGraphState) -> TurnGraphState:
        session = state["session"]
        cpm = state["cpm"]

        result: DeepLinkResult = await bus.request(
            ORCHESTRATOR,
            DEEPLINK,
            "build",
            {
                "base_url": cpm.base_url,
                "product_key": session.product_key,
                "collected": dict(session.collected),
            },
        )

        if not result.ok or result.artifact is None:
            logger.warning(
                "deeplink_failed",
                session_id=session.session_id,
                error=result.error,
            )
            prompt = await bus.request(
                ORCHESTRATOR,
                PROMPTS,
                "deeplink_apology",
                {
                    "reason": result.error or "",
                    "storefront": storefront_root or cpm.base_url,
                },
            )
            return await _conclude(
                machine,
                state,
                prompt,
                RESULT_DEEPLINK_ERROR,
                deeplink=None,
                error=result.error,
            )

        if await _live_session(machine, state) is None:
            return _aborted(state)
        await machine.set_deeplink(state["user_id"], result.artifact, state["session_id"])

        prompt = await bus.request(
            ORCHESTRATOR,
            PROMPTS,
            "readiness_summary",
            {
                "collected": dict(session.collected),
                "product": cpm.product_info,
                "fields": cpm.field_map(),
            },
        )
        return await _conclude(
            machine,
            state,
            prompt,
            SessionState.READY_FOR_CHECKOUT.value,
            deeplink=result.artifact,
        )

    return finalize_node


async def _abort_node(state: TurnGraphState) -> TurnGraphState:
    """Terminal node for turns whose session went away."""
    return _aborted(state)


# ---------------------------------------------------------------------------
# Conditional routing functions
# ---------------------------------------------------------------------------


def _after_extract(state: TurnGraphState) -> str:
    return "abort" if state.get("aborted") else "validate"


def _after_record(state: TurnGraphState) -> str:
    """Route after recording: recover on errors, else try to advance."""
    if state.get("aborted"):
        return "abort"
    if state.get("errors"):
        return "recover"
    return "advance"


def _after_advance(state: TurnGraphState) -> str:
    if state["session"].state == SessionState.READY_FOR_CHECKOUT:
        return "finalize"
    return "request_more"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_turn_graph(
    bus: AgentBus,
    machine: SessionStateMachine,
    *,
    locale: str,
    lookahead: bool = True,
    storefront_root: str = "",
) -> StateGraph:
    """Construct the LangGraph turn workflow.

    Parameters
    ----------
    bus:
        Agent bus reaching extraction, prompts and deep-link agents.
    machine:
        Session state machine the turn is applied to.
    locale:
        Locale for validation messages.
    lookahead:
        Also target missing fields of later steps during extraction.
    storefront_root:
        Storefront URL offered when the deep-link cannot be built.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    graph = StateGraph(TurnGraphState)

    graph.add_node("extract", _make_extract_node(bus, machine, lookahead))
    graph.add_node("validate", _make_validate_node(locale))
    graph.add_node("record", _make_record_node(machine))
    graph.add_node("advance", _make_advance_node(machine))
    graph.add_node("recover", _make_recover_node(bus, machine))
    graph.add_node("request_more", _make_request_more_node(bus, machine))
    graph.add_node("finalize", _make_finalize_node(bus, machine, storefront_root))
    graph.add_node("abort", _abort_node)

    graph.set_entry_point("extract")

    graph.add_conditional_edges(
        "extract",
        _after_extract,
        {"validate": "validate", "abort": "abort"},
    )
    graph.add_edge("validate", "record")
    graph.add_conditional_edges(
        "record",
        _after_record,
        {"recover": "recover", "advance": "advance", "abort": "abort"},
    )
    graph.add_conditional_edges(
        "advance",
        _after_advance,
        {"finalize": "finalize", "request_more": "request_more"},
    )

    graph.add_edge("recover", END)
    graph.add_edge("request_more", END)
    graph.add_edge("finalize", END)
    graph.add_edge("abort", END)

    return graph


def compile_turn_graph(
    bus: AgentBus,
    machine: SessionStateMachine,
    *,
    locale: str,
    lookahead: bool = True,
    storefront_root: str = "",
):
    """Build and compile the turn graph into a runnable."""
    graph = build_turn_graph(
        bus,
        machine,
        locale=locale,
        lookahead=lookahead,
        storefront_root=storefront_root,
    )
    return graph.compile()
