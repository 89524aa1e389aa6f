"""Entry point for the checkout assistant service.

Configures logging, builds the FastAPI application around a fully wired
orchestrator, and starts the uvicorn server.
"""

from __future__ import annotations

import structlog
import uvicorn

from common import setup_logging

from checkout_assistant.api import build_process_model_store, create_app
from checkout_assistant.config import Settings, get_settings
from checkout_assistant.orchestrator import create_orchestrator

logger = structlog.get_logger(__name__)


def build_app(settings: Settings | None = None) -> object:
    """Construct the fully-configured application."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")

    orchestrator = create_orchestrator(
        settings,
        process_models=build_process_model_store(settings),
    )
    app = create_app(settings, orchestrator)

    base_url = f"http://{settings.host}:{settings.port}"
    if settings.host == "0.0.0.0":
        base_url = f"http://localhost:{settings.port}"

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        locale=settings.prompt_locale,
        llm_enabled=settings.llm_enabled,
        process_model_dir=settings.process_model_dir or None,
        docs_url=f"{base_url}/docs",
    )
    return app


def main() -> None:
    """Launch the checkout assistant server."""
    settings = get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,  # type: ignore[arg-type]
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
