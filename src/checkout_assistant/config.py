"""Configuration management for the checkout assistant."""

from __future__ import annotations

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Checkout assistant configuration.

    Inherits provider keys and logging settings from
    ``common.config.Settings`` and adds the checkout-dialog knobs.
    """

    # Service identity
    service_name: str = "checkout-assistant"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # LLM configuration
    llm_enabled: bool = True
    llm_timeout_ms: int = 15000
    default_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-sonnet-4-20250514"

    # Dialog
    prompt_locale: str = "pt-BR"
    progress_denominator_includes_optional: bool = False
    extraction_lookahead: bool = True

    # Session management
    session_ttl_seconds: int = 24 * 60 * 60

    # Checkout process models
    process_model_dir: str = ""
    seed_default_process_model: bool = True

    # Deep-link
    deeplink_root_url: str = "https://www.lge.com/br"
    deeplink_checkout_path: str = "/checkout"

    @property
    def llm_timeout_seconds(self) -> float:
        return self.llm_timeout_ms / 1000


def get_settings() -> Settings:
    """Return a settings instance read from the environment."""
    return Settings()
