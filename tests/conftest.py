"""Shared test fixtures for the checkout assistant."""

from __future__ import annotations

import asyncio
import copy
from typing import Any

import pytest

from checkout_assistant.config import Settings
from checkout_assistant.orchestrator import create_orchestrator
from checkout_assistant.process_model import InMemoryProcessModelBackend, ProcessModelStore
from checkout_assistant.protocols.llm_client import LLMUnavailableError

BASE_URL = "https://www.lge.com/br"


def scenario_blob(product_key: str = "default") -> dict[str, Any]:
    """Three-step process model: personal info, shipping, payment."""
    return {
        "productKey": product_key,
        "baseUrl": BASE_URL,
        "steps": [
            {
                "stepId": "personal",
                "name": "Dados pessoais",
                "order": 1,
                "fields": [
                    {"name": "name", "label": "Nome", "type": "text", "required": True},
                    {
                        "name": "email",
                        "label": "E-mail",
                        "type": "email",
                        "required": True,
                        "validation": "rfc5322_email",
                    },
                ],
            },
            {
                "stepId": "shipping",
                "name": "Entrega",
                "order": 2,
                "fields": [
                    {
                        "name": "cep",
                        "label": "CEP",
                        "type": "postal_code",
                        "required": True,
                        "validation": "brazil_cep",
                    },
                    {"name": "address", "label": "Endereço", "type": "text", "required": True},
                ],
            },
            {
                "stepId": "payment",
                "name": "Pagamento",
                "order": 3,
                "fields": [
                    {
                        "name": "paymentType",
                        "label": "Forma de pagamento",
                        "type": "select",
                        "required": True,
                        "options": [
                            {"value": "pix", "text": "Pix"},
                            {"value": "card", "text": "Cartão"},
                        ],
                    },
                ],
            },
        ],
    }


class FakeLLM:
    """In-test LLM: canned extractions keyed by utterance, optional text replies.

    With ``generate_reply=None`` generation fails, so prompts use templates.
    Setting ``gate`` makes every ``extract`` wait until the event is set;
    ``gates`` holds the same kind of event for single utterances.
    """

    def __init__(
        self,
        extractions: dict[str, Any] | None = None,
        generate_reply: str | None = None,
    ) -> None:
        self.extractions = dict(extractions or {})
        self.generate_reply = generate_reply
        self.extract_calls: list[dict[str, Any]] = []
        self.generate_calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.gates: dict[str, asyncio.Event] = {}
        self.entered = asyncio.Event()

    async def extract(self, system: str, user: str, schema: dict[str, Any]) -> dict[str, Any]:
        self.extract_calls.append({"system": system, "user": user, "schema": schema})
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if user in self.gates:
            await self.gates[user].wait()
        reply = self.extractions.get(user, {})
        if isinstance(reply, Exception):
            raise reply
        return copy.deepcopy(reply)

    async def generate(self, system: str, user: str) -> str:
        self.generate_calls.append((system, user))
        if self.generate_reply is None:
            raise LLMUnavailableError("generation disabled in tests")
        return self.generate_reply


@pytest.fixture
def settings():
    """Test settings: no LLM keys, pt-BR prompts."""
    return Settings(
        environment="testing",
        openai_api_key="",
        anthropic_api_key="",
        llm_enabled=False,
        prompt_locale="pt-BR",
        process_model_dir="",
    )


@pytest.fixture
def llm_settings(settings):
    return settings.model_copy(update={"llm_enabled": True})


@pytest.fixture
def process_model_store():
    return ProcessModelStore(InMemoryProcessModelBackend({"default": scenario_blob()}))


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def orchestrator(settings, process_model_store):
    """Orchestrator running on deterministic fallbacks only."""
    return create_orchestrator(settings, process_models=process_model_store)


@pytest.fixture
def llm_orchestrator(llm_settings, process_model_store, fake_llm):
    """Orchestrator whose LLM is the ``fake_llm`` fixture."""
    return create_orchestrator(llm_settings, process_models=process_model_store, llm=fake_llm)
