"""Checkout process model persistence."""

from checkout_assistant.process_model.backends import (
    InMemoryProcessModelBackend,
    JsonFileProcessModelBackend,
    ProcessModelBackend,
)
from checkout_assistant.process_model.defaults import default_process_model_blob
from checkout_assistant.process_model.store import DEFAULT_KEY, ProcessModelStore

__all__ = [
    "DEFAULT_KEY",
    "InMemoryProcessModelBackend",
    "JsonFileProcessModelBackend",
    "ProcessModelBackend",
    "ProcessModelStore",
    "default_process_model_blob",
]
