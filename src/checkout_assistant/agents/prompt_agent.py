"""Prompt composition agent.

Produces the four user-facing prompt kinds: next-field request,
validation-error recovery, readiness summary and deep-link failure
apology.  Each kind is generated by the LLM when one is available and
otherwise rendered from the localised templates in
:mod:`checkout_assistant.messages`.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from checkout_assistant.agents.deeplink_agent import is_sensitive
from checkout_assistant.messages import PROCEED_PLACEHOLDER, resolve_locale, template
from checkout_assistant.models import (
    FieldDescriptor,
    FieldType,
    ProductSummary,
    ValidationIssue,
)
from checkout_assistant.protocols.agent_bus import BusAgent
from checkout_assistant.protocols.llm_client import LLMCapability

logger = structlog.get_logger(__name__)

AGENT_NAME = "prompts"

MAX_FIELDS_PER_REQUEST = 3

_SYSTEM_PROMPT = """\
You are a friendly checkout assistant for an online store.  You help the
shopper finish buying a product by collecting the details the store's
checkout form needs.

Rules:
- Reply in the language of locale {locale}.
- Be concise: two or three short sentences, no Markdown headings.
- Only mention the fields and facts given to you; never invent prices,
  products, policies or links.
"""

_NEXT_FIELD_TASK = (
    "Ask the shopper for the following fields, in this order. "
    "For fields with options, list the options."
)
_RECOVERY_TASK = (
    "Tell the shopper which values were rejected and why, one per line, "
    "and ask for corrected values."
)
_READY_TASK = (
    "Confirm that everything needed was collected, list the collected values, "
    f"and end with the exact text {PROCEED_PLACEHOLDER} where the checkout link will go."
)
_APOLOGY_TASK = (
    "Apologise that the checkout link could not be created and tell the shopper "
    "to visit the storefront URL directly and finish from the cart."
)


class PromptComposer:
    """Composes dialog prompts, LLM-first with template fallback."""

    def __init__(
        self,
        llm: LLMCapability | None = None,
        locale: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._llm = llm
        self._locale = resolve_locale(locale)
        self._timeout = timeout_seconds

    @property
    def locale(self) -> str:
        return self._locale

    # ------------------------------------------------------------------
    # Prompt kinds
    # ------------------------------------------------------------------

    async def next_field(
        self,
        missing_fields: list[FieldDescriptor],
        product: ProductSummary | None = None,
        collected: dict[str, str] | None = None,
    ) -> str:
        """Ask for at most the first three missing fields."""
        requested = missing_fields[:MAX_FIELDS_PER_REQUEST]
        if not requested:
            return template("all_collected", self._locale)

        context = {
            "task": _NEXT_FIELD_TASK,
            "product": self._product_context(product),
            "fields": [self._field_context(field) for field in requested],
            "alreadyCollected": sorted(n for n in (collected or {}) if not is_sensitive(n)),
        }
        generated = await self._generate("next_field", context)
        if generated:
            return generated
        return " ".join(self._ask(field) for field in requested)

    async def validation_recovery(
        self,
        errors: list[ValidationIssue],
        fields: dict[str, FieldDescriptor] | None = None,
    ) -> str:
        """Enumerate each rejected field and ask for corrections."""
        fields = fields or {}
        items = [
            {"field": self._label(error.field, fields), "problem": error.message}
            for error in errors
        ]
        generated = await self._generate("validation_recovery", {"task": _RECOVERY_TASK, "errors": items})
        if generated:
            return generated

        lines = [template("validation_header", self._locale)]
        lines += [f"- {item['field']}: {item['problem']}" for item in items]
        lines.append(template("validation_footer", self._locale))
        return "\n".join(lines)

    async def readiness_summary(
        self,
        collected: dict[str, str],
        product: ProductSummary | None = None,
        fields: dict[str, FieldDescriptor] | None = None,
    ) -> str:
        """Summarise the collected values; always contains the proceed placeholder.

        Sensitive fields are never shown, nor sent to the LLM.
        """
        fields = fields or {}
        shown = [
            (self._label(name, fields), self._display_value(name, value, fields))
            for name, value in collected.items()
            if not is_sensitive(name)
        ]

        context = {
            "task": _READY_TASK,
            "product": self._product_context(product),
            "collected": {label: value for label, value in shown},
        }
        generated = await self._generate("readiness_summary", context)
        if generated:
            if PROCEED_PLACEHOLDER not in generated:
                generated = f"{generated}\n\n{PROCEED_PLACEHOLDER}"
            return generated

        lines = [template("ready_header", self._locale, product=self._product_name(product))]
        lines += [f"- {label}: {value}" for label, value in shown]
        lines.append(template("ready_footer", self._locale, placeholder=PROCEED_PLACEHOLDER))
        return "\n".join(lines)

    async def deeplink_apology(self, reason: str, storefront: str) -> str:
        context = {"task": _APOLOGY_TASK, "reason": reason, "storefrontUrl": storefront}
        generated = await self._generate("deeplink_apology", context)
        if generated:
            return generated
        return template("apology", self._locale, reason=reason, storefront=storefront)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _generate(self, kind: str, context: dict[str, Any]) -> str | None:
        if self._llm is None:
            return None
        try:
            text = await asyncio.wait_for(
                self._llm.generate(
                    _SYSTEM_PROMPT.format(locale=self._locale),
                    json.dumps(context, ensure_ascii=False, indent=2),
                ),
                timeout=self._timeout,
            )
        except Exception:
            logger.warning("llm_prompt_failed", kind=kind, exc_info=True)
            return None
        if not isinstance(text, str) or not text.strip():
            logger.warning("llm_prompt_empty", kind=kind)
            return None
        return text

    def _ask(self, field: FieldDescriptor) -> str:
        label = field.display_label
        if field.has_options:
            options = ", ".join(option.text or option.value for option in field.options)
            return template("ask_choice", self._locale, label=label, options=options)
        if field.type == FieldType.CHECKBOX:
            return template("ask_checkbox", self._locale, label=label)
        return template("ask", self._locale, label=label)

    @staticmethod
    def _label(name: str, fields: dict[str, FieldDescriptor]) -> str:
        field = fields.get(name)
        return field.display_label if field else name

    @staticmethod
    def _display_value(name: str, value: str, fields: dict[str, FieldDescriptor]) -> str:
        field = fields.get(name)
        if field is not None and field.has_options:
            for option in field.options:
                if option.value == value and option.text:
                    return option.text
        return value

    @staticmethod
    def _field_context(field: FieldDescriptor) -> dict[str, Any]:
        data: dict[str, Any] = {"name": field.name, "label": field.display_label}
        if field.has_options:
            data["options"] = [option.text or option.value for option in field.options]
        if field.placeholder:
            data["example"] = field.placeholder
        return data

    @staticmethod
    def _product_context(product: ProductSummary | None) -> dict[str, str] | None:
        if product is None or not (product.title or product.price):
            return None
        return {"title": product.title, "price": product.price}

    def _product_name(self, product: ProductSummary | None) -> str:
        if product is not None and product.title:
            return product.title
        return template("product_fallback", self._locale)


class PromptAgent(BusAgent):
    """Bus wrapper exposing one intent per prompt kind."""

    def __init__(self, composer: PromptComposer) -> None:
        super().__init__(AGENT_NAME)
        self.composer = composer
        self.on("next_field", self._next_field)
        self.on("validation_recovery", self._validation_recovery)
        self.on("readiness_summary", self._readiness_summary)
        self.on("deeplink_apology", self._deeplink_apology)

    async def _next_field(self, payload: dict[str, Any]) -> str:
        return await self.composer.next_field(
            payload.get("missing_fields", []),
            payload.get("product"),
            payload.get("collected"),
        )

    async def _validation_recovery(self, payload: dict[str, Any]) -> str:
        return await self.composer.validation_recovery(
            payload.get("errors", []),
            payload.get("fields"),
        )

    async def _readiness_summary(self, payload: dict[str, Any]) -> str:
        return await self.composer.readiness_summary(
            payload.get("collected", {}),
            payload.get("product"),
            payload.get("fields"),
        )

    async def _deeplink_apology(self, payload: dict[str, Any]) -> str:
        return await self.composer.deeplink_apology(
            payload.get("reason", ""),
            payload.get("storefront", ""),
        )
