"""Adapters at the edges of the checkout core: the agent bus and LLM access."""
