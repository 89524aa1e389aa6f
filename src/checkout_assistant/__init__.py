"""Conversational checkout assistant.

Drives a multi-step checkout dialog over a storefront's checkout process
model and hands the user a prefilled deep-link into the storefront's own
checkout page.
"""

__version__ = "0.1.0"
