"""Bus wrapper around the checkout process model store."""

from __future__ import annotations

from typing import Any

from checkout_assistant.models import CheckoutProcessModel
from checkout_assistant.process_model.store import ProcessModelStore
from checkout_assistant.protocols.agent_bus import BusAgent

AGENT_NAME = "process_models"


class ProcessModelAgent(BusAgent):
    """Exposes ``load``, ``load_blob``, ``save`` and ``list_keys``."""

    def __init__(self, store: ProcessModelStore) -> None:
        super().__init__(AGENT_NAME)
        self.store = store
        self.on("load", self._load)
        self.on("load_blob", self._load_blob)
        self.on("save", self._save)
        self.on("list_keys", self._list_keys)

    async def _load(self, payload: dict[str, Any]) -> CheckoutProcessModel:
        return await self.store.load(payload["product_key"])

    async def _load_blob(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        return await self.store.load_blob(payload["product_key"])

    async def _save(self, payload: dict[str, Any]) -> CheckoutProcessModel:
        return await self.store.save(payload["product_key"], payload["process_model"])

    async def _list_keys(self, payload: dict[str, Any]) -> list[str]:
        return await self.store.list_keys()
