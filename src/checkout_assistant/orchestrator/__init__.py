"""Checkout orchestrator and its turn workflow graph."""

from checkout_assistant.orchestrator.orchestrator import (
    CheckoutOrchestrator,
    create_orchestrator,
)

__all__ = ["CheckoutOrchestrator", "create_orchestrator"]
