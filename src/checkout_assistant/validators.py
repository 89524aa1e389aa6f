"""Field catalog helpers and pure validators.

Nothing in this module performs I/O.  Validators return results instead of
raising; messages are localised through :mod:`checkout_assistant.messages`.
"""

from __future__ import annotations

import math
import re
from typing import NamedTuple

from checkout_assistant.messages import validation_message
from checkout_assistant.models import (
    CheckoutProcessModel,
    CheckoutStep,
    FieldDescriptor,
    FieldType,
    ValidationIssue,
    ValidationRule,
)

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^(?:\+?55)?[ .-]?(?:\(?\d{2}\)?)?[ .-]?\d{4,5}[- ]?\d{4}$")
CEP_RE = re.compile(r"^\d{5}[- ]?\d{3}$")

KIND_EMAIL = "email"
KIND_PHONE = "phone"
KIND_POSTAL = "postal"

_KIND_BY_TYPE = {
    FieldType.EMAIL: KIND_EMAIL,
    FieldType.TEL: KIND_PHONE,
    FieldType.POSTAL_CODE: KIND_POSTAL,
}
_KIND_BY_RULE = {
    "rfc5322_email": KIND_EMAIL,
    "brazil_phone": KIND_PHONE,
    "brazil_cep": KIND_POSTAL,
}
_RULE_BY_KIND = {kind: rule for rule, kind in _KIND_BY_RULE.items()}

# Whole words of a field name or label; checked in order.
_KIND_HINTS: tuple[tuple[str, frozenset[str]], ...] = (
    (KIND_EMAIL, frozenset({"email"})),
    (KIND_POSTAL, frozenset({"cep", "zip", "postal"})),
    (KIND_PHONE, frozenset({"phone", "telephone", "telefone", "celular", "tel"})),
)
_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_WORD_RE = re.compile(r"[^\W_]+")

_TRUTHY = {"true", "1", "yes", "y", "sim", "s", "on", "예", "네"}
_FALSY = {"false", "0", "no", "n", "não", "nao", "off", "아니요", "아니오"}


class RuleCheck(NamedTuple):
    ok: bool
    message: str | None = None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _local_phone_digits(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    if len(digits) in (12, 13) and digits.startswith("55"):
        digits = digits[2:]
    return digits


def matches_rule(
    value: str,
    rule: ValidationRule | str,
    locale: str | None = None,
) -> RuleCheck:
    """Check *value* against a named rule.

    Supported rules: ``rfc5322_email``, ``brazil_phone`` (10 or 11 local
    digits, optional ``+55`` prefix), ``brazil_cep``, ``regex`` (anchored
    ``pattern``), ``length`` (``min``/``max``) and ``enum`` (``values``,
    case-insensitive).
    """
    if isinstance(rule, str):
        rule = ValidationRule(rule=rule)
    name = rule.rule

    if name == "rfc5322_email":
        ok = bool(EMAIL_RE.match(value))
    elif name == "brazil_phone":
        ok = bool(PHONE_RE.match(value)) and len(_local_phone_digits(value)) in (10, 11)
    elif name == "brazil_cep":
        ok = bool(CEP_RE.match(value))
    elif name == "regex":
        ok = rule.pattern is not None and re.fullmatch(rule.pattern, value) is not None
    elif name == "length":
        minimum = rule.min if rule.min is not None else 0
        maximum = rule.max if rule.max is not None else math.inf
        ok = minimum <= len(value) <= maximum
        if not ok:
            return RuleCheck(
                False,
                validation_message(
                    "length",
                    locale,
                    min=minimum,
                    max=rule.max if rule.max is not None else "∞",
                ),
            )
    elif name == "enum":
        allowed = {v.casefold() for v in rule.values}
        ok = value.casefold() in allowed
        if not ok:
            return RuleCheck(
                False, validation_message("enum", locale, values=", ".join(rule.values))
            )
    else:
        return RuleCheck(False, validation_message("unknown_rule", locale, rule=name))

    if ok:
        return RuleCheck(True)
    return RuleCheck(False, validation_message(name, locale))


# ---------------------------------------------------------------------------
# Field kinds
# ---------------------------------------------------------------------------


def field_kind(field: FieldDescriptor) -> str | None:
    """Return the semantic kind (email/phone/postal) of a field, if any.

    The declared type wins, then the validation rule, then hints in the
    field's name or label for free-text fields.
    """
    kind = _KIND_BY_TYPE.get(field.type)
    if kind:
        return kind
    if field.validation is not None:
        kind = _KIND_BY_RULE.get(field.validation.rule)
        if kind:
            return kind
    if field.type != FieldType.TEXT:
        return None
    words = _hint_words(f"{field.name} {field.label}")
    for hinted_kind, hints in _KIND_HINTS:
        if words & hints:
            return hinted_kind
    return None


def _hint_words(text: str) -> set[str]:
    """Lower-cased words of *text*, split on camelCase and punctuation."""
    text = re.sub(r"(?i)\be-mail\b", "email", text)
    return {word.lower() for word in _WORD_RE.findall(_CAMEL_BOUNDARY_RE.sub(" ", text))}


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def _match_option(field: FieldDescriptor, value: str) -> str | None:
    wanted = value.casefold()
    for option in field.options:
        if option.value.casefold() == wanted or (option.text and option.text.casefold() == wanted):
            return option.value
    return None


def validate_field(
    field: FieldDescriptor,
    value: str,
    locale: str | None = None,
) -> tuple[str | None, ValidationIssue | None]:
    """Validate one extracted value.

    Returns ``(normalized_value, None)`` on success or ``(None, issue)``.
    Select/radio values are canonicalised to the matching option value and
    checkbox answers to ``"true"``/``"false"``.
    """
    value = " ".join(value.split())

    if field.has_options:
        canonical = _match_option(field, value)
        if canonical is None:
            labels = ", ".join(option.text or option.value for option in field.options)
            return None, ValidationIssue(
                field=field.name,
                message=validation_message("options", locale, values=labels),
            )
        value = canonical
    elif field.type == FieldType.CHECKBOX:
        lowered = value.casefold()
        if lowered in _TRUTHY:
            value = "true"
        elif lowered in _FALSY:
            value = "false"
        else:
            return None, ValidationIssue(
                field=field.name, message=validation_message("checkbox", locale)
            )

    rules: list[ValidationRule] = []
    if field.validation is not None:
        rules.append(field.validation)
    kind = field_kind(field)
    implicit = _RULE_BY_KIND.get(kind) if kind else None
    if implicit and all(rule.rule != implicit for rule in rules):
        rules.append(ValidationRule(rule=implicit))

    for rule in rules:
        check = matches_rule(value, rule, locale)
        if not check.ok:
            return None, ValidationIssue(field=field.name, message=check.message or "")
    return value, None


# ---------------------------------------------------------------------------
# Required / missing fields and progress
# ---------------------------------------------------------------------------


def _is_collectable(field: FieldDescriptor) -> bool:
    return field.type != FieldType.HIDDEN


def _has_value(collected: dict[str, str], name: str) -> bool:
    value = collected.get(name)
    return value is not None and value.strip() != ""


def required_fields_of(step: CheckoutStep | None) -> list[FieldDescriptor]:
    """Required, user-collectable fields of a step (hidden fields excluded)."""
    if step is None:
        return []
    return [field for field in step.fields if field.required and _is_collectable(field)]


def missing_fields(step: CheckoutStep | None, collected: dict[str, str]) -> list[FieldDescriptor]:
    """Required fields of *step* that are absent or blank in *collected*."""
    return [field for field in required_fields_of(step) if not _has_value(collected, field.name)]


def missing_fields_from(
    cpm: CheckoutProcessModel,
    step_index: int,
    collected: dict[str, str],
) -> list[FieldDescriptor]:
    """Missing required fields of every step from *step_index* onwards."""
    result: list[FieldDescriptor] = []
    for step in cpm.ordered_steps()[step_index:]:
        result.extend(missing_fields(step, collected))
    return result


def progress_fields(
    cpm: CheckoutProcessModel,
    include_optional: bool = False,
) -> list[FieldDescriptor]:
    return [
        field
        for field in cpm.all_fields()
        if _is_collectable(field) and (field.required or include_optional)
    ]


def compute_progress(
    cpm: CheckoutProcessModel,
    collected: dict[str, str],
    include_optional: bool = False,
) -> int:
    """Percentage of counted fields, across the whole model, with a value."""
    counted = progress_fields(cpm, include_optional)
    if not counted:
        return 100
    done = sum(1 for field in counted if _has_value(collected, field.name))
    return (100 * done) // len(counted)
