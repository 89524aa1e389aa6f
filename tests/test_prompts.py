"""Tests for prompt composition."""

import pytest
from conftest import FakeLLM, scenario_blob

from checkout_assistant.agents.prompt_agent import PromptComposer
from checkout_assistant.messages import PROCEED_PLACEHOLDER
from checkout_assistant.models import (
    CheckoutProcessModel,
    FieldDescriptor,
    ProductSummary,
    ValidationIssue,
)


@pytest.fixture
def cpm():
    return CheckoutProcessModel.model_validate(scenario_blob())


class TestTemplates:
    async def test_next_field_pt_br(self, cpm):
        prompt = await PromptComposer().next_field(cpm.step_at(0).fields)
        assert prompt == "Por favor, informe Nome. Por favor, informe E-mail."

    async def test_next_field_ko_kr(self, cpm):
        prompt = await PromptComposer(locale="ko-KR").next_field(cpm.step_at(0).fields[:1])
        assert prompt == "Nome을(를) 알려주세요."

    async def test_at_most_three_fields(self):
        fields = [FieldDescriptor(name=f"f{i}", label=f"Campo {i}") for i in range(5)]
        prompt = await PromptComposer().next_field(fields)
        assert "Campo 2" in prompt
        assert "Campo 3" not in prompt

    async def test_select_options_inline(self, cpm):
        prompt = await PromptComposer().next_field(cpm.step_at(2).fields)
        assert "Pix" in prompt and "Cartão" in prompt

    async def test_recovery_lists_every_error(self, cpm):
        errors = [
            ValidationIssue(field="email", message="O e-mail informado não é um endereço válido."),
            ValidationIssue(field="cep", message="CEP inválido."),
        ]
        prompt = await PromptComposer().validation_recovery(errors, cpm.field_map())
        assert "- E-mail: O e-mail informado não é um endereço válido." in prompt
        assert "- CEP: CEP inválido." in prompt

    async def test_readiness_hides_sensitive_fields(self, cpm):
        collected = {"name": "João Silva", "paymentType": "pix", "CVV": "123"}
        prompt = await PromptComposer().readiness_summary(
            collected, ProductSummary(title="LG OLED55"), cpm.field_map()
        )
        assert PROCEED_PLACEHOLDER in prompt
        assert "LG OLED55" in prompt
        assert "João Silva" in prompt
        assert "Forma de pagamento: Pix" in prompt
        assert "123" not in prompt

    async def test_apology_points_to_storefront(self):
        prompt = await PromptComposer(locale="en-US").deeplink_apology(
            "malformed base URL", "https://www.lge.com/br"
        )
        assert "https://www.lge.com/br" in prompt
        assert "malformed base URL" in prompt


class TestLLMPrompts:
    async def test_output_is_returned_verbatim(self, cpm):
        llm = FakeLLM(generate_reply="Qual é o seu nome?")
        prompt = await PromptComposer(llm).next_field(cpm.step_at(0).fields)
        assert prompt == "Qual é o seu nome?"
        system, user = llm.generate_calls[0]
        assert "pt-BR" in system
        assert "Nome" in user

    async def test_readiness_gets_placeholder_appended(self):
        llm = FakeLLM(generate_reply="Tudo certo!")
        prompt = await PromptComposer(llm).readiness_summary({"name": "João", "senha": "x1"})
        assert prompt.startswith("Tudo certo!")
        assert prompt.endswith(PROCEED_PLACEHOLDER)
        assert "x1" not in llm.generate_calls[0][1]

    async def test_generation_failure_uses_template(self, cpm):
        prompt = await PromptComposer(FakeLLM()).next_field(cpm.step_at(1).fields)
        assert prompt == "Por favor, informe CEP. Por favor, informe Endereço."

    async def test_nothing_missing(self):
        assert await PromptComposer().next_field([]) == (
            "Todas as informações necessárias foram coletadas."
        )
