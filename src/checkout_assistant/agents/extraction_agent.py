"""Extraction specialist agent.

Turns a free-form utterance into ``{fieldName: value}`` for a set of target
fields.  Uses structured LLM extraction when available and falls back to
deterministic pattern matching for email, phone and CEP fields.  The
adapter never validates; that happens in :mod:`checkout_assistant.validators`.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import structlog

from checkout_assistant.models import FieldDescriptor
from checkout_assistant.protocols.agent_bus import BusAgent
from checkout_assistant.protocols.llm_client import LLMCapability
from checkout_assistant.validators import (
    KIND_EMAIL,
    KIND_PHONE,
    KIND_POSTAL,
    field_kind,
    matches_rule,
)

logger = structlog.get_logger(__name__)

AGENT_NAME = "extraction"

EMAIL_SEARCH_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_SEARCH_RE = re.compile(
    r"(?<![\w@.])(?:\+?55[ .-]?)?(?:\(?\d{2}\)?[ .-]?)?\d{4,5}[- ]?\d{4}(?!\d)"
)
CEP_SEARCH_RE = re.compile(r"(?<![\d-])\d{5}-?\d{3}(?![\d-])")

_EXTRACTION_SYSTEM_PROMPT = """\
You extract checkout form values from a shopper's message.

Only fill a key when the message states its value explicitly.  Omit keys
whose value is not in the message.  Copy values as written; do not invent,
complete or reformat them.  For fields with options, answer with the
matching option value.

Fields:
{fields}
"""


def _describe_field(field: FieldDescriptor) -> str:
    line = f"- {field.name}: {field.display_label} ({field.type.value})"
    if field.has_options:
        choices = ", ".join(
            f"{option.value}={option.text}" if option.text else option.value
            for option in field.options
        )
        line += f" options: {choices}"
    return line


def _clean(value: Any) -> str | None:
    """Coerce a scalar LLM value to a trimmed string; ``None`` when unusable."""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (str, int, float)):
        text = str(value)
    else:
        return None
    text = " ".join(text.split())
    return text or None


class ExtractionAdapter:
    """Extracts field values from utterances."""

    def __init__(self, llm: LLMCapability | None = None, timeout_seconds: float = 15.0) -> None:
        self._llm = llm
        self._timeout = timeout_seconds

    async def extract(
        self,
        utterance: str,
        target_fields: list[FieldDescriptor],
        prior_collected: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Return the values of *target_fields* present in *utterance*.

        Keys are always a subset of the target field names and values are
        never empty.
        """
        if not utterance.strip() or not target_fields:
            return {}

        if self._llm is not None:
            try:
                raw = await asyncio.wait_for(
                    self._llm.extract(
                        self._system_prompt(target_fields, prior_collected),
                        utterance,
                        self._schema(target_fields),
                    ),
                    timeout=self._timeout,
                )
            except Exception:
                logger.warning("llm_extraction_failed", exc_info=True)
            else:
                if isinstance(raw, dict):
                    return self._sanitize(raw, target_fields)
                logger.warning("llm_extraction_malformed", got=type(raw).__name__)

        partial = self.extract_deterministic(utterance, target_fields)
        if not partial:
            logger.info(
                "extraction_unavailable",
                targets=[field.name for field in target_fields],
            )
        return partial

    # ------------------------------------------------------------------
    # Deterministic fallback
    # ------------------------------------------------------------------

    @staticmethod
    def extract_deterministic(
        utterance: str,
        target_fields: list[FieldDescriptor],
    ) -> dict[str, str]:
        """Pattern-match email, phone and CEP fields; others get no value."""
        partial: dict[str, str] = {}
        for field in target_fields:
            kind = field_kind(field)
            value: str | None = None
            if kind == KIND_EMAIL:
                match = EMAIL_SEARCH_RE.search(utterance)
                value = match.group(0) if match else None
            elif kind == KIND_POSTAL:
                match = CEP_SEARCH_RE.search(utterance)
                value = match.group(0) if match else None
            elif kind == KIND_PHONE:
                value = next(
                    (
                        m.group(0)
                        for m in PHONE_SEARCH_RE.finditer(utterance)
                        if matches_rule(m.group(0), "brazil_phone").ok
                    ),
                    None,
                )
            cleaned = _clean(value)
            if cleaned:
                partial[field.name] = cleaned
        return partial

    # ------------------------------------------------------------------
    # LLM helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _schema(target_fields: list[FieldDescriptor]) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                field.name: {"type": "string", "description": field.display_label}
                for field in target_fields
            },
            "additionalProperties": False,
        }

    @staticmethod
    def _system_prompt(
        target_fields: list[FieldDescriptor],
        prior_collected: dict[str, str] | None,
    ) -> str:
        prompt = _EXTRACTION_SYSTEM_PROMPT.format(
            fields="\n".join(_describe_field(field) for field in target_fields)
        )
        if prior_collected:
            prompt += f"\nAlready collected (do not repeat): {', '.join(sorted(prior_collected))}\n"
        return prompt

    @staticmethod
    def _sanitize(raw: dict[str, Any], target_fields: list[FieldDescriptor]) -> dict[str, str]:
        allowed = {field.name for field in target_fields}
        unknown = [key for key in raw if key not in allowed]
        if unknown:
            logger.debug("llm_extraction_unknown_keys", keys=unknown)

        partial: dict[str, str] = {}
        for name in allowed:
            cleaned = _clean(raw.get(name))
            if cleaned:
                partial[name] = cleaned
        return partial


class ExtractionAgent(BusAgent):
    """Bus wrapper exposing the ``extract`` intent."""

    def __init__(self, adapter: ExtractionAdapter) -> None:
        super().__init__(AGENT_NAME)
        self.adapter = adapter
        self.on("extract", self._extract)

    async def _extract(self, payload: dict[str, Any]) -> dict[str, str]:
        fields = [
            field if isinstance(field, FieldDescriptor) else FieldDescriptor.model_validate(field)
            for field in payload.get("target_fields", [])
        ]
        return await self.adapter.extract(
            payload.get("utterance", ""),
            fields,
            payload.get("prior_collected"),
        )
