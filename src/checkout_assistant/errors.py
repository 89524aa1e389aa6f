"""Error kinds surfaced by the checkout core.

Every exception carries a ``kind`` string that callers (and the HTTP
transport) use to decide how to react.  Validation problems and deep-link
failures are reported inside results rather than raised.
"""

from __future__ import annotations


class CheckoutError(Exception):
    """Base class for all checkout-core errors."""

    kind: str = "checkout_error"

    def __init__(self, message: str = "", **context: object) -> None:
        super().__init__(message or self.kind)
        self.context = dict(context)


class NoProcessModelError(CheckoutError):
    """Neither the requested nor the ``default`` process model exists."""

    kind = "no_process_model"


class InvalidProcessModelError(CheckoutError):
    """A process model blob violates the structural invariants."""

    kind = "invalid_process_model"


class NoActiveSessionError(CheckoutError):
    """The user has no live checkout session."""

    kind = "no_active_session"


class TurnInProgressError(CheckoutError):
    """Another call is already operating on the user's session."""

    kind = "turn_in_progress"


class CheckoutNotReadyError(CheckoutError):
    """``complete`` was requested before all required fields were collected."""

    kind = "checkout_not_ready"


class StoreFailureError(CheckoutError):
    """The process model store or the session store is unavailable."""

    kind = "store_failure"


class InvalidTransitionError(CheckoutError):
    """A session state transition outside the allowed diagram."""

    kind = "invalid_transition"


class AgentNotRegisteredError(CheckoutError):
    """An envelope was addressed to an agent the bus does not know."""

    kind = "agent_not_registered"


class InvalidEnvelopeError(CheckoutError):
    """An envelope is missing one of its mandatory fields."""

    kind = "invalid_envelope"


class UnsupportedIntentError(CheckoutError):
    """The addressed agent has no handler for the envelope's intent."""

    kind = "unsupported_intent"
