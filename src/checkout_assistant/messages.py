"""Localised validation messages and deterministic prompt templates.

Supported locales are ``pt-BR`` (default), ``ko-KR`` and ``en-US``.  Any
other locale falls back to ``pt-BR``; a locale given only by language
(``ko``) resolves to its regional entry.
"""

from __future__ import annotations

DEFAULT_LOCALE = "pt-BR"

# Placeholder the transport replaces with the deep-link anchor.
PROCEED_PLACEHOLDER = "[proceed to checkout]"

VALIDATION_MESSAGES: dict[str, dict[str, str]] = {
    "pt-BR": {
        "rfc5322_email": "O e-mail informado não é um endereço válido.",
        "brazil_phone": "Telefone inválido. Exemplo: (11) 98765-4321",
        "brazil_cep": "CEP inválido. Exemplo: 01310-100",
        "regex": "O valor informado não está no formato esperado.",
        "length": "O valor deve ter entre {min} e {max} caracteres.",
        "enum": "Valor não permitido. Opções: {values}",
        "options": "Opção inválida. Escolha uma de: {values}",
        "checkbox": "Responda com sim ou não.",
        "unknown_rule": "Regra de validação desconhecida: {rule}",
    },
    "ko-KR": {
        "rfc5322_email": "유효한 이메일 주소 형식이 아닙니다.",
        "brazil_phone": "유효한 전화번호 형식이 아닙니다. 예: (11) 98765-4321",
        "brazil_cep": "유효한 CEP(우편번호) 형식이 아닙니다. 예: 01310-100",
        "regex": "입력하신 값의 형식이 올바르지 않습니다.",
        "length": "{min}자 이상 {max}자 이하로 입력해 주세요.",
        "enum": "허용되지 않는 값입니다. 가능한 값: {values}",
        "options": "유효한 선택지가 아닙니다. 다음 중에서 선택해 주세요: {values}",
        "checkbox": "예 또는 아니요로 답해 주세요.",
        "unknown_rule": "알 수 없는 검증 규칙입니다: {rule}",
    },
    "en-US": {
        "rfc5322_email": "This is not a valid email address.",
        "brazil_phone": "This is not a valid phone number. Example: (11) 98765-4321",
        "brazil_cep": "This is not a valid CEP. Example: 01310-100",
        "regex": "The value does not have the expected format.",
        "length": "The value must be between {min} and {max} characters long.",
        "enum": "Value not allowed. Allowed values: {values}",
        "options": "Not a valid option. Choose one of: {values}",
        "checkbox": "Please answer yes or no.",
        "unknown_rule": "Unknown validation rule: {rule}",
    },
}

PROMPT_TEMPLATES: dict[str, dict[str, str]] = {
    "pt-BR": {
        "ask": "Por favor, informe {label}.",
        "ask_choice": "Por favor, escolha {label}: {options}.",
        "ask_checkbox": "{label}? (sim/não)",
        "all_collected": "Todas as informações necessárias foram coletadas.",
        "validation_header": "Alguns dados informados precisam de correção:",
        "validation_footer": "Por favor, envie os valores corretos.",
        "ready_header": "Tudo pronto! Vamos finalizar a compra de {product} com estes dados:",
        "ready_footer": "Clique em {placeholder} para concluir o pagamento na loja.",
        "apology": (
            "Desculpe, não foi possível gerar o link de checkout ({reason}). "
            "Acesse a loja diretamente em {storefront} e conclua a compra pelo carrinho."
        ),
        "product_fallback": "o produto selecionado",
    },
    "ko-KR": {
        "ask": "{label}을(를) 알려주세요.",
        "ask_choice": "{label}을(를) 선택해 주세요: {options}",
        "ask_checkbox": "{label}에 동의하시나요? (예/아니요)",
        "all_collected": "모든 필요한 정보가 수집되었습니다.",
        "validation_header": "입력하신 정보에 문제가 있습니다:",
        "validation_footer": "올바른 정보를 다시 입력해 주세요.",
        "ready_header": "모든 필요한 정보가 수집되었습니다. 다음 정보로 {product} 주문을 진행합니다:",
        "ready_footer": "{placeholder} 링크를 클릭하면 결제 페이지로 이동합니다.",
        "apology": (
            "죄송합니다, 체크아웃 링크를 생성하는 중에 문제가 발생했습니다 ({reason}). "
            "직접 {storefront} 에 방문하여 장바구니에서 구매를 진행해 주세요."
        ),
        "product_fallback": "선택한 제품",
    },
    "en-US": {
        "ask": "Please provide your {label}.",
        "ask_choice": "Please choose {label}: {options}.",
        "ask_checkbox": "{label}? (yes/no)",
        "all_collected": "All the information we need has been collected.",
        "validation_header": "Some of the details need to be corrected:",
        "validation_footer": "Please send the corrected values.",
        "ready_header": "All set! Here is what we will use to check out {product}:",
        "ready_footer": "Click {placeholder} to finish payment on the store.",
        "apology": (
            "Sorry, we could not create your checkout link ({reason}). "
            "Please visit {storefront} directly and complete the purchase from your cart."
        ),
        "product_fallback": "the selected product",
    },
}

_LANGUAGE_DEFAULTS = {"pt": "pt-BR", "ko": "ko-KR", "en": "en-US"}


def resolve_locale(locale: str | None) -> str:
    """Map a requested locale onto one of the supported catalogs."""
    if not locale:
        return DEFAULT_LOCALE
    if locale in PROMPT_TEMPLATES:
        return locale
    language = locale.replace("_", "-").split("-")[0].lower()
    return _LANGUAGE_DEFAULTS.get(language, DEFAULT_LOCALE)


def validation_message(key: str, locale: str | None = None, **params: object) -> str:
    catalog = VALIDATION_MESSAGES[resolve_locale(locale)]
    return catalog[key].format(**params)


def template(key: str, locale: str | None = None, **params: object) -> str:
    catalog = PROMPT_TEMPLATES[resolve_locale(locale)]
    return catalog[key].format(**params)
