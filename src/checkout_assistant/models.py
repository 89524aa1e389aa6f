"""Pydantic models for the checkout assistant.

Covers field descriptors and checkout process models (the persisted blob
format uses camelCase keys), checkout sessions and their turn log,
deep-link artifacts, orchestrator results, and agent bus envelopes.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class _BlobModel(BaseModel):
    """Base for models that round-trip through the camelCase blob format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Field catalog
# ---------------------------------------------------------------------------


class FieldType(str, enum.Enum):
    """Semantic input type of a checkout form field."""

    TEXT = "text"
    EMAIL = "email"
    TEL = "tel"
    POSTAL_CODE = "postal_code"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    HIDDEN = "hidden"


# Input types emitted by the crawler that collapse onto the semantic set.
_FIELD_TYPE_SYNONYMS = {
    "select-one": "select",
    "textarea": "text",
    "number": "text",
    "password": "text",
    "phone": "tel",
    "zip": "postal_code",
    "postal": "postal_code",
    "cep": "postal_code",
}


class FieldOption(_BlobModel):
    """One choice of a select or radio field."""

    value: str
    text: str = ""

    @field_validator("value", "text", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ValidationRule(_BlobModel):
    """Validation attached to a field.

    Serialised as a bare rule name (``"brazil_cep"``) when the rule takes no
    parameters, otherwise as an object such as
    ``{"rule": "length", "min": 2, "max": 80}``.
    """

    rule: str
    pattern: str | None = None
    min: int | None = None
    max: int | None = None
    values: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_rule_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"rule": data}
        return data

    @model_serializer(mode="plain")
    def _serialize(self) -> str | dict[str, Any]:
        if self.pattern is None and self.min is None and self.max is None and not self.values:
            return self.rule
        data: dict[str, Any] = {"rule": self.rule}
        if self.pattern is not None:
            data["pattern"] = self.pattern
        if self.min is not None:
            data["min"] = self.min
        if self.max is not None:
            data["max"] = self.max
        if self.values:
            data["values"] = list(self.values)
        return data


class FieldDescriptor(_BlobModel):
    """Immutable description of a single checkout form field."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str = ""
    type: FieldType = FieldType.TEXT
    required: bool = False
    placeholder: str | None = None
    options: list[FieldOption] = Field(default_factory=list)
    validation: ValidationRule | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _FIELD_TYPE_SYNONYMS.get(lowered, lowered)
        return value

    @property
    def display_label(self) -> str:
        return self.label or self.name

    @property
    def has_options(self) -> bool:
        return self.type in (FieldType.SELECT, FieldType.RADIO) and bool(self.options)


# ---------------------------------------------------------------------------
# Checkout process model
# ---------------------------------------------------------------------------


class CheckoutStep(_BlobModel):
    """One page/form of the storefront checkout."""

    step_id: str
    name: str = ""
    order: int
    fields: list[FieldDescriptor] = Field(default_factory=list)
    is_terminal: bool = False


class ProductSummary(_BlobModel):
    """Product details used to ground prompts."""

    title: str = ""
    price: str = ""

    @field_validator("price", mode="before")
    @classmethod
    def _stringify_price(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        return value


class CheckoutProcessModel(_BlobModel):
    """Structured description of a storefront's checkout step sequence."""

    product_key: str
    base_url: str = ""
    steps: list[CheckoutStep] = Field(default_factory=list)
    product_info: ProductSummary | None = None
    meta: dict[str, Any] = Field(default_factory=dict, alias="_meta")

    def ordered_steps(self) -> list[CheckoutStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def step_at(self, index: int) -> CheckoutStep | None:
        steps = self.ordered_steps()
        if 0 <= index < len(steps):
            return steps[index]
        return None

    def all_fields(self) -> list[FieldDescriptor]:
        return [field for step in self.ordered_steps() for field in step.fields]

    def field_map(self) -> dict[str, FieldDescriptor]:
        return {field.name: field for field in self.all_fields()}

    def invariant_violations(self) -> list[str]:
        """Return human-readable descriptions of broken structural invariants.

        Checked: at least one step, step ``order`` values strictly increasing
        by one in list order (no gaps, no duplicates), and field names unique
        across the whole model.
        """
        problems: list[str] = []
        if not self.steps:
            problems.append("process model has no steps")

        previous: int | None = None
        for step in self.steps:
            if previous is not None and step.order != previous + 1:
                problems.append(
                    f"step '{step.step_id}' has order {step.order}, expected {previous + 1}"
                )
            previous = step.order

        step_ids = [step.step_id for step in self.steps]
        if len(set(step_ids)) != len(step_ids):
            problems.append("step ids are not unique")

        seen: dict[str, str] = {}
        for step in self.steps:
            for field in step.fields:
                if field.name in seen:
                    problems.append(
                        f"field '{field.name}' appears in step '{seen[field.name]}' "
                        f"and step '{step.step_id}'"
                    )
                else:
                    seen[field.name] = step.step_id
        return problems


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionState(str, enum.Enum):
    """Lifecycle states of a checkout session."""

    COLLECTING_INFO = "collecting_info"
    VALIDATION_ERROR = "validation_error"
    READY_FOR_CHECKOUT = "ready_for_checkout"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def accepts_turns(self) -> bool:
        return self in (SessionState.COLLECTING_INFO, SessionState.VALIDATION_ERROR)


_TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.CANCELLED,
        SessionState.SUPERSEDED,
        SessionState.FAILED,
    }
)


class ValidationIssue(BaseModel):
    """A single field that failed validation."""

    field: str
    message: str


class TurnRecord(BaseModel):
    """One accepted ``(utterance, response)`` exchange."""

    turn_index: int
    utterance: str
    extracted: dict[str, str] = Field(default_factory=dict)
    validation_errors: list[ValidationIssue] = Field(default_factory=list)
    newly_collected: list[str] = Field(default_factory=list)
    prompt_emitted: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class DeepLinkArtifact(BaseModel):
    """A prefilled storefront checkout URL."""

    url: str
    redacted_fields: list[str] = Field(default_factory=list)
    produced_at: datetime = Field(default_factory=_utcnow)
    product_key: str


class DeepLinkResult(BaseModel):
    """Outcome of a deep-link build: an artifact or an error reason."""

    ok: bool
    artifact: DeepLinkArtifact | None = None
    error: str | None = None


class CheckoutSession(BaseModel):
    """Full state of one user's checkout dialog."""

    session_id: str
    user_id: str
    product_key: str
    state: SessionState = SessionState.COLLECTING_INFO
    cpm_ref: str
    step_index: int = 0
    collected: dict[str, str] = Field(default_factory=dict)
    history: list[TurnRecord] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    last_updated_at: datetime = Field(default_factory=_utcnow)
    disposition: str | None = None
    deeplink: DeepLinkArtifact | None = None


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------


class StartResult(BaseModel):
    """Response to ``start``."""

    session_id: str
    state: str
    prompt: str
    required_fields: list[FieldDescriptor] = Field(default_factory=list)
    missing_fields: list[FieldDescriptor] = Field(default_factory=list)
    progress: int = 0


class TurnResult(BaseModel):
    """Response to ``turn``.

    ``state`` is a session state value, or ``deeplink_error`` when the
    session became ready but the deep-link could not be produced.
    """

    state: str
    prompt: str = ""
    progress: int = 0
    errors: list[ValidationIssue] = Field(default_factory=list)
    processed_fields: list[str] = Field(default_factory=list)
    missing_fields: list[FieldDescriptor] = Field(default_factory=list)
    deeplink: DeepLinkArtifact | None = None
    error: str | None = None


class CompleteResult(BaseModel):
    """Response to ``complete``."""

    state: str
    session_id: str
    deeplink: DeepLinkArtifact | None = None
    prompt: str = ""
    error: str | None = None
    completed_at: datetime | None = None


class CancelResult(BaseModel):
    """Response to ``cancel``; carries the terminal snapshot when one exists."""

    state: str = SessionState.CANCELLED.value
    session_id: str | None = None
    snapshot: CheckoutSession | None = None


class SessionSummary(BaseModel):
    """Compact view of a live session for listings."""

    user_id: str
    session_id: str
    product_key: str
    state: SessionState
    progress: int
    started_at: datetime
    last_updated_at: datetime


# ---------------------------------------------------------------------------
# Agent bus
# ---------------------------------------------------------------------------


class AgentEnvelope(BaseModel):
    """Message exchanged over the agent bus.

    Fields are optional at the model level so that the bus itself can
    report exactly which mandatory field is missing.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message_id: str | None = None
    from_agent: str | None = None
    to_agent: str | None = None
    message_type: str | None = None
    intent: str | None = None
    payload: Any = None
    timestamp: datetime | None = None
