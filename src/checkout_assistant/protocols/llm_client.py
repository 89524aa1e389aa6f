"""LLM access behind two capabilities: free-form generation and structured
extraction against a supplied JSON schema.

The checkout core depends only on :class:`LLMCapability`.  The concrete
:class:`LLMClient` tries OpenAI first and then Anthropic, depending on which
API keys are configured; the SDKs are imported lazily.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

import structlog

from checkout_assistant.config import Settings

logger = structlog.get_logger(__name__)


class LLMCapability(Protocol):
    """What the checkout core needs from a language model."""

    async def generate(self, system: str, user: str) -> str: ...

    async def extract(self, system: str, user: str, schema: dict[str, Any]) -> dict[str, Any]: ...


class LLMUnavailableError(Exception):
    """Raised when no provider produced a usable answer."""


def parse_json_object(raw: str) -> dict[str, Any]:
    """Parse an LLM answer that should be a single JSON object.

    Markdown code fences around the JSON are tolerated.

    Raises
    ------
    ValueError
        If the text is not a JSON object.
    """
    cleaned = re.sub(r"```(?:json)?\s*", "", raw)
    cleaned = re.sub(r"```\s*$", "", cleaned).strip()
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LLMClient:
    """Provider-backed implementation of :class:`LLMCapability`."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._openai_client: object | None = None
        self._anthropic_client: object | None = None

    @property
    def configured(self) -> bool:
        return bool(self._settings.openai_api_key or self._settings.anthropic_api_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(self, system: str, user: str) -> str:
        """Return free-form text for the given system and user prompts."""
        if self._settings.openai_api_key:
            try:
                text = await self._openai_chat(system, user, json_mode=False)
                if text.strip():
                    return text.strip()
            except Exception:
                logger.warning("openai_generate_failed", exc_info=True)

        if self._settings.anthropic_api_key:
            try:
                text = await self._anthropic_message(system, user)
                if text.strip():
                    return text.strip()
            except Exception:
                logger.warning("anthropic_generate_failed", exc_info=True)

        raise LLMUnavailableError("No LLM provider produced a response")

    async def extract(self, system: str, user: str, schema: dict[str, Any]) -> dict[str, Any]:
        """Return a JSON object shaped by *schema*."""
        schema_system = (
            f"{system}\n\n"
            "Return ONLY a valid JSON object (no markdown fences) that matches "
            f"this JSON schema:\n{json.dumps(schema, ensure_ascii=False)}"
        )

        if self._settings.openai_api_key:
            try:
                raw = await self._openai_chat(schema_system, user, json_mode=True)
                return parse_json_object(raw)
            except Exception:
                logger.warning("openai_extract_failed", exc_info=True)

        if self._settings.anthropic_api_key:
            try:
                raw = await self._anthropic_message(schema_system, user)
                return parse_json_object(raw)
            except Exception:
                logger.warning("anthropic_extract_failed", exc_info=True)

        raise LLMUnavailableError("No LLM provider produced a structured response")

    # ------------------------------------------------------------------
    # OpenAI
    # ------------------------------------------------------------------

    async def _openai_chat(self, system: str, user: str, json_mode: bool) -> str:
        from openai import AsyncOpenAI

        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(api_key=self._settings.openai_api_key)

        client: AsyncOpenAI = self._openai_client  # type: ignore[assignment]
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await client.chat.completions.create(
            model=self._settings.default_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=0.2,
            max_tokens=1024,
            **kwargs,
        )
        return response.choices[0].message.content or ""

    # ------------------------------------------------------------------
    # Anthropic
    # ------------------------------------------------------------------

    async def _anthropic_message(self, system: str, user: str) -> str:
        from anthropic import AsyncAnthropic

        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic(api_key=self._settings.anthropic_api_key)

        client: AsyncAnthropic = self._anthropic_client  # type: ignore[assignment]
        response = await client.messages.create(
            model=self._settings.anthropic_model,
            max_tokens=1024,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text if response.content else ""


def build_llm_client(settings: Settings) -> LLMClient | None:
    """Return a client, or ``None`` when the LLM is disabled or unconfigured."""
    if not settings.llm_enabled:
        logger.info("llm_disabled")
        return None
    client = LLMClient(settings)
    if not client.configured:
        logger.info("llm_not_configured")
        return None
    return client
