"""LangGraph state schema for a single checkout turn.

The ``TurnGraphState`` TypedDict describes every piece of data that flows
through the turn graph.  Nodes read from and write to this shared state.
"""

from __future__ import annotations

from typing import TypedDict

from checkout_assistant.models import (
    CheckoutProcessModel,
    CheckoutSession,
    DeepLinkArtifact,
    FieldDescriptor,
    ValidationIssue,
)


class TurnGraphState(TypedDict, total=False):
    """Typed dictionary describing the full state flowing through the graph."""

    # --- Input ----------------------------------------------------------------
    user_id: str
    session_id: str
    utterance: str
    cpm: CheckoutProcessModel

    # --- Session snapshot (refreshed after every store write) -----------------
    session: CheckoutSession

    # --- Extraction -----------------------------------------------------------
    target_fields: list[FieldDescriptor]
    extracted: dict[str, str]

    # --- Validation -----------------------------------------------------------
    accepted: dict[str, str]
    errors: list[ValidationIssue]

    # --- Output ---------------------------------------------------------------
    result_state: str
    prompt: str
    missing_fields: list[FieldDescriptor]
    deeplink: DeepLinkArtifact | None
    error: str | None

    # --- Cancellation ---------------------------------------------------------
    aborted: bool
