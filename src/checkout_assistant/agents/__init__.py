"""Specialist agents reachable over the agent bus."""
