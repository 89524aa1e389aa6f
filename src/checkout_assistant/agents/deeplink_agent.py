"""Deep-link specialist agent.

Builds the storefront checkout URL that prefills the collected fields.
Sensitive fields are removed before anything is serialised.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import SplitResult, parse_qsl, quote, urlsplit, urlunsplit

import structlog

from checkout_assistant.models import DeepLinkArtifact, DeepLinkResult
from checkout_assistant.protocols.agent_bus import BusAgent

logger = structlog.get_logger(__name__)

AGENT_NAME = "deeplink"

SENSITIVE_FIELDS = frozenset(
    name.casefold()
    for name in (
        "cardNumber",
        "creditCardNumber",
        "cvv",
        "securityCode",
        "cardVerificationCode",
        "password",
        "senha",
    )
)

_CHECKOUT_PATH_RE = re.compile(r"/(?:checkout|cart)(?:/|$)", re.IGNORECASE)
_RESERVED_PARAMS = {"prefill", "autofill"}


def is_sensitive(field_name: str) -> bool:
    return field_name.casefold() in SENSITIVE_FIELDS


def redact(collected: dict[str, str]) -> tuple[dict[str, str], list[str]]:
    """Split *collected* into the shareable map and the removed names."""
    kept: dict[str, str] = {}
    removed: list[str] = []
    for name, value in collected.items():
        if is_sensitive(name):
            removed.append(name)
        else:
            kept[name] = value
    return kept, removed


def _q(value: str) -> str:
    return quote(value, safe="")


class DeepLinkBuilder:
    """Produces prefilled checkout URLs."""

    def __init__(
        self,
        root_url: str,
        checkout_path: str = "/checkout",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._root_url = root_url
        self._checkout_path = "/" + checkout_path.lstrip("/")
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def build(self, base_url: str, product_key: str, collected: dict[str, str]) -> DeepLinkResult:
        """Build the deep-link, or a failed result with the reason.

        When *base_url* already points at a cart or checkout path the
        parameters are appended to it; otherwise they go on
        ``<storefront root><checkout_path>?productId=<product_key>``.  An
        empty *base_url* uses the configured storefront root.
        """
        if not product_key:
            return DeepLinkResult(ok=False, error="product key is empty")

        base = (base_url or self._root_url or "").strip()
        parts = urlsplit(base)
        if parts.scheme not in ("http", "https") or not parts.netloc or " " in base:
            logger.warning("deeplink_malformed_base_url", base_url=base_url)
            return DeepLinkResult(ok=False, error=f"malformed base URL '{base_url}'")

        shareable, removed = redact(collected)
        prefill = json.dumps(shareable, ensure_ascii=False, separators=(",", ":"))

        if _CHECKOUT_PATH_RE.search(parts.path):
            pairs = [
                (key, value)
                for key, value in parse_qsl(parts.query, keep_blank_values=True)
                if key.casefold() not in _RESERVED_PARAMS
            ]
            if not any(key == "productId" for key, _ in pairs):
                pairs.append(("productId", product_key))
            pairs += [("prefill", prefill), ("autoFill", "true")]
            query = "&".join(f"{_q(key)}={_q(value)}" for key, value in pairs)
            url = urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
        else:
            root = self._storefront_root(parts)
            url = (
                f"{root}{self._checkout_path}"
                f"?productId={_q(product_key)}&prefill={_q(prefill)}&autoFill=true"
            )

        artifact = DeepLinkArtifact(
            url=url,
            redacted_fields=removed,
            produced_at=self._clock(),
            product_key=product_key,
        )
        logger.info(
            "deeplink_built",
            product_key=product_key,
            fields=len(shareable),
            redacted=removed,
        )
        return DeepLinkResult(ok=True, artifact=artifact)

    def _storefront_root(self, parts: SplitResult) -> str:
        """Storefront root for a base URL that is not a checkout URL.

        The configured root when it is on the same host, else the bare
        ``scheme://host`` of *parts*; the base URL's own path is dropped.
        """
        configured = urlsplit(self._root_url or "")
        if configured.netloc.casefold() == parts.netloc.casefold():
            return urlunsplit((parts.scheme, parts.netloc, configured.path.rstrip("/"), "", ""))
        return urlunsplit((parts.scheme, parts.netloc, "", "", ""))


class DeepLinkAgent(BusAgent):
    """Bus wrapper exposing the ``build`` intent."""

    def __init__(self, builder: DeepLinkBuilder) -> None:
        super().__init__(AGENT_NAME)
        self.builder = builder
        self.on("build", self._build)

    async def _build(self, payload: dict[str, Any]) -> DeepLinkResult:
        return self.builder.build(
            payload.get("base_url", ""),
            payload.get("product_key", ""),
            dict(payload.get("collected") or {}),
        )
