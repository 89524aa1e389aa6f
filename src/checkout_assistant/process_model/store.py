"""Checkout process model store.

Loads process models by product key with a process-local cache, falling
back from the product key to its category prefix and finally to
``default``.  Saves are validated against the structural invariants,
serialised per key, and invalidate the cached entry.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from checkout_assistant.errors import (
    CheckoutError,
    InvalidProcessModelError,
    NoProcessModelError,
    StoreFailureError,
)
from checkout_assistant.models import (
    CheckoutProcessModel,
    CheckoutStep,
    FieldDescriptor,
    FieldType,
)
from checkout_assistant.process_model.backends import (
    InMemoryProcessModelBackend,
    ProcessModelBackend,
)

logger = structlog.get_logger(__name__)

DEFAULT_KEY = "default"


class ProcessModelStore:
    """Read-mostly store of checkout process models."""

    def __init__(self, backend: ProcessModelBackend | None = None) -> None:
        self._backend: ProcessModelBackend = backend or InMemoryProcessModelBackend()
        self._cache: dict[str, CheckoutProcessModel] = {}
        self._generations: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, product_key: str) -> CheckoutProcessModel:
        """Return the process model for *product_key*.

        Lookup order: the exact key, its category prefix (text before the
        first ``-``), then ``default``.

        Raises
        ------
        NoProcessModelError
            If none of the candidates exist.
        StoreFailureError
            If the backend is unavailable or a stored blob is unreadable.
        """
        for key in self._candidate_keys(product_key):
            cpm = await self._load_exact(key)
            if cpm is not None:
                if key != product_key:
                    logger.info(
                        "process_model_fallback",
                        requested=product_key,
                        resolved=key,
                    )
                return cpm

        logger.warning("process_model_missing", product_key=product_key)
        raise NoProcessModelError(
            f"No checkout process model for '{product_key}' and no default",
            product_key=product_key,
        )

    async def load_blob(self, product_key: str) -> dict[str, Any] | None:
        """Return the raw stored blob for exactly *product_key* (no fallback)."""
        return await self._read(product_key)

    @staticmethod
    def _candidate_keys(product_key: str) -> list[str]:
        candidates = [product_key]
        category = product_key.split("-", 1)[0]
        if category and category != product_key:
            candidates.append(category)
        if DEFAULT_KEY not in candidates:
            candidates.append(DEFAULT_KEY)
        return candidates

    async def _load_exact(self, key: str) -> CheckoutProcessModel | None:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        generation = self._generations.get(key, 0)
        blob = await self._read(key)
        if blob is None:
            return None

        try:
            cpm = CheckoutProcessModel.model_validate(blob)
        except ValidationError as exc:
            logger.error("process_model_unreadable", key=key, error=str(exc))
            raise StoreFailureError(f"Stored process model '{key}' is unreadable") from exc

        # A save that landed while we were reading wins over this result.
        if self._generations.get(key, 0) == generation:
            self._cache[key] = cpm
        return cpm

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def save(
        self,
        product_key: str,
        cpm: CheckoutProcessModel | dict[str, Any],
    ) -> CheckoutProcessModel:
        """Validate and persist a process model under *product_key*.

        ``_meta.createdAt`` is preserved from the previously stored version
        when there is one; ``_meta.updatedAt`` is always refreshed.

        Raises
        ------
        InvalidProcessModelError
            If the blob does not parse or breaks an invariant.
        StoreFailureError
            If the backend write fails.
        """
        if not product_key:
            raise InvalidProcessModelError("A product key is required")

        if isinstance(cpm, CheckoutProcessModel):
            blob = cpm.model_dump(by_alias=True, mode="json", exclude_none=True)
        else:
            blob = copy.deepcopy(cpm)

        blob.setdefault("productKey", product_key)
        if blob["productKey"] != product_key:
            raise InvalidProcessModelError(
                f"Blob productKey '{blob['productKey']}' does not match '{product_key}'"
            )

        try:
            model = CheckoutProcessModel.model_validate(blob)
        except ValidationError as exc:
            raise InvalidProcessModelError(str(exc), product_key=product_key) from exc

        problems = model.invariant_violations()
        if problems:
            raise InvalidProcessModelError("; ".join(problems), product_key=product_key)

        async with self._lock_for(product_key):
            previous = await self._read(product_key)
            now = datetime.now(tz=timezone.utc).isoformat()
            meta = dict(blob.get("_meta") or {})
            previous_meta = (previous or {}).get("_meta") or {}
            meta["createdAt"] = previous_meta.get("createdAt") or meta.get("createdAt") or now
            meta["updatedAt"] = now
            blob["_meta"] = meta

            await self._write(product_key, blob)
            self._generations[product_key] = self._generations.get(product_key, 0) + 1
            self._cache.pop(product_key, None)

        logger.info(
            "process_model_saved",
            product_key=product_key,
            steps=len(model.steps),
            fields=len(model.all_fields()),
        )
        return CheckoutProcessModel.model_validate(blob)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_keys(self) -> list[str]:
        try:
            return await self._backend.keys()
        except Exception as exc:
            raise StoreFailureError(f"Process model backend unavailable: {exc}") from exc

    async def all_fields(self, product_key: str) -> list[tuple[CheckoutStep, FieldDescriptor]]:
        """Every field of the resolved model paired with its step."""
        cpm = await self.load(product_key)
        return [(step, field) for step in cpm.ordered_steps() for field in step.fields]

    async def find_fields(
        self,
        product_key: str,
        *,
        field_type: FieldType | str | None = None,
        required: bool | None = None,
        name_contains: str | None = None,
    ) -> list[FieldDescriptor]:
        """Filter the resolved model's fields by type, required-ness and name."""
        wanted_type = FieldType(field_type) if field_type is not None else None
        needle = name_contains.lower() if name_contains else None
        matches: list[FieldDescriptor] = []
        for _, field in await self.all_fields(product_key):
            if wanted_type is not None and field.type != wanted_type:
                continue
            if required is not None and field.required != required:
                continue
            if needle and needle not in field.name.lower() and needle not in field.label.lower():
                continue
            matches.append(field)
        return matches

    def invalidate(self, product_key: str | None = None) -> None:
        """Drop one cached entry, or the whole cache."""
        if product_key is None:
            self._cache.clear()
        else:
            self._cache.pop(product_key, None)

    # ------------------------------------------------------------------
    # Backend access
    # ------------------------------------------------------------------

    async def _read(self, key: str) -> dict[str, Any] | None:
        try:
            return await self._backend.read(key)
        except CheckoutError:
            raise
        except Exception as exc:
            logger.error("process_model_read_failed", key=key, error=str(exc))
            raise StoreFailureError(f"Process model backend unavailable: {exc}") from exc

    async def _write(self, key: str, blob: dict[str, Any]) -> None:
        try:
            await self._backend.write(key, blob)
        except CheckoutError:
            raise
        except Exception as exc:
            logger.error("process_model_write_failed", key=key, error=str(exc))
            raise StoreFailureError(f"Process model backend unavailable: {exc}") from exc
