"""Built-in ``default`` checkout process model.

Mirrors the storefront's standard four-page checkout: cart review, personal
details, delivery address and payment method.  Seeded at application start
when the store has no ``default`` entry of its own.
"""

from __future__ import annotations

from typing import Any


def default_process_model_blob(base_url: str = "https://www.lge.com/br") -> dict[str, Any]:
    """Return a fresh copy of the default process model blob."""
    return {
        "productKey": "default",
        "baseUrl": base_url,
        "steps": [
            {
                "stepId": "cart",
                "name": "Carrinho de Compras",
                "order": 1,
                "fields": [],
            },
            {
                "stepId": "personal",
                "name": "Informações Pessoais",
                "order": 2,
                "fields": [
                    {
                        "name": "name",
                        "label": "Nome completo",
                        "type": "text",
                        "required": True,
                        "validation": {"rule": "length", "min": 2, "max": 120},
                    },
                    {
                        "name": "email",
                        "label": "Endereço de e-mail",
                        "type": "email",
                        "required": True,
                        "validation": "rfc5322_email",
                    },
                    {
                        "name": "phone",
                        "label": "Número de telefone",
                        "type": "tel",
                        "required": True,
                        "placeholder": "(11) 98765-4321",
                        "validation": "brazil_phone",
                    },
                ],
            },
            {
                "stepId": "shipping",
                "name": "Endereço de Entrega",
                "order": 3,
                "fields": [
                    {
                        "name": "zipCode",
                        "label": "CEP",
                        "type": "postal_code",
                        "required": True,
                        "placeholder": "01310-100",
                        "validation": "brazil_cep",
                    },
                    {"name": "address", "label": "Endereço completo", "type": "text", "required": True},
                    {"name": "city", "label": "Cidade", "type": "text", "required": True},
                    {"name": "state", "label": "Estado", "type": "text", "required": True},
                ],
            },
            {
                "stepId": "payment",
                "name": "Método de Pagamento",
                "order": 4,
                "isTerminal": True,
                "fields": [
                    {
                        "name": "paymentMethod",
                        "label": "Método de pagamento",
                        "type": "select",
                        "required": True,
                        "options": [
                            {"value": "credit_card", "text": "Cartão de Crédito"},
                            {"value": "boleto", "text": "Boleto Bancário"},
                            {"value": "pix", "text": "PIX"},
                        ],
                    },
                ],
            },
        ],
    }
