"""FastAPI application for the checkout assistant.

A thin transport over the orchestrator's public surface:
- Checkout dialog (start, turn, complete, cancel)
- Session inspection and listing
- Checkout process model administration
"""

from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator

import structlog
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from common import ErrorResponse, HealthResponse

from checkout_assistant.config import Settings
from checkout_assistant.errors import CheckoutError
from checkout_assistant.models import (
    CancelResult,
    CheckoutSession,
    CompleteResult,
    SessionSummary,
    StartResult,
    TurnResult,
)
from checkout_assistant.orchestrator import CheckoutOrchestrator, create_orchestrator
from checkout_assistant.process_model import (
    DEFAULT_KEY,
    InMemoryProcessModelBackend,
    JsonFileProcessModelBackend,
    ProcessModelStore,
    default_process_model_blob,
)

logger = structlog.get_logger(__name__)

_STATUS_BY_KIND = {
    "no_process_model": 404,
    "no_active_session": 404,
    "turn_in_progress": 409,
    "checkout_not_ready": 409,
    "invalid_process_model": 422,
    "store_failure": 503,
}


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class StartRequest(BaseModel):
    user_id: str
    product_key: str


class TurnRequest(BaseModel):
    user_id: str
    utterance: str = ""


class UserRequest(BaseModel):
    """Request addressing a user's session (complete / cancel)."""

    user_id: str


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


class AppState:
    """Shared application state accessible from route handlers."""

    def __init__(self, settings: Settings, orchestrator: CheckoutOrchestrator) -> None:
        self.settings = settings
        self.orchestrator = orchestrator


def build_process_model_store(settings: Settings) -> ProcessModelStore:
    """Process model store for the configured backend.

    The in-memory backend starts with the built-in ``default`` model when
    seeding is enabled.
    """
    if settings.process_model_dir:
        return ProcessModelStore(JsonFileProcessModelBackend(settings.process_model_dir))
    blobs = {}
    if settings.seed_default_process_model:
        blobs[DEFAULT_KEY] = default_process_model_blob(settings.deeplink_root_url)
    return ProcessModelStore(InMemoryProcessModelBackend(blobs))


async def seed_default_process_model(orchestrator: CheckoutOrchestrator, settings: Settings) -> bool:
    """Store the built-in ``default`` model when none exists; True if seeded."""
    if await orchestrator.process_model(DEFAULT_KEY) is not None:
        return False
    await orchestrator.save_process_model(
        DEFAULT_KEY, default_process_model_blob(settings.deeplink_root_url)
    )
    logger.info("default_process_model_seeded")
    return True


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    orchestrator: CheckoutOrchestrator | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    orchestrator = orchestrator or create_orchestrator(
        settings, process_models=build_process_model_store(settings)
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.seed_default_process_model:
            await seed_default_process_model(orchestrator, settings)
        yield

    app = FastAPI(
        title="Checkout Assistant",
        description=(
            "Conversational checkout assistant that collects a storefront's "
            "checkout form fields in dialog and hands off a prefilled deep-link."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state = AppState(settings, orchestrator)
    app.state.app_state = state
    app.state.settings = settings

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
        )

    # -------------------------------------------------------------------
    # Checkout dialog
    # -------------------------------------------------------------------

    @app.post("/api/v1/checkout/start", response_model=StartResult, tags=["checkout"])
    async def start_checkout(req: StartRequest) -> StartResult:
        """Open a checkout dialog for a product, superseding any live one."""
        return await state.orchestrator.start(req.user_id, req.product_key)

    @app.post("/api/v1/checkout/turn", response_model=TurnResult, tags=["checkout"])
    async def checkout_turn(req: TurnRequest) -> TurnResult:
        """Process one shopper utterance."""
        return await state.orchestrator.turn(req.user_id, req.utterance)

    @app.post("/api/v1/checkout/complete", response_model=CompleteResult, tags=["checkout"])
    async def complete_checkout(req: UserRequest) -> CompleteResult:
        return await state.orchestrator.complete(req.user_id)

    @app.post("/api/v1/checkout/cancel", response_model=CancelResult, tags=["checkout"])
    async def cancel_checkout(req: UserRequest) -> CancelResult:
        return await state.orchestrator.cancel(req.user_id)

    @app.get("/api/v1/checkout/sessions", response_model=list[SessionSummary], tags=["checkout"])
    async def list_sessions() -> list[SessionSummary]:
        """Summaries of every live session."""
        return await state.orchestrator.active_sessions()

    @app.get(
        "/api/v1/checkout/sessions/{user_id}",
        response_model=CheckoutSession,
        tags=["checkout"],
    )
    async def get_session(user_id: str) -> CheckoutSession:
        session = await state.orchestrator.inspect(user_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"No session for user {user_id}")
        return session

    # -------------------------------------------------------------------
    # Process models
    # -------------------------------------------------------------------

    @app.get("/api/v1/process-models", tags=["process-models"])
    async def list_process_models() -> dict[str, Any]:
        return {"keys": await state.orchestrator.process_model_keys()}

    @app.get("/api/v1/process-models/{product_key}", tags=["process-models"])
    async def get_process_model(product_key: str) -> dict[str, Any]:
        """The stored blob for exactly this key (no fallback)."""
        blob = await state.orchestrator.process_model(product_key)
        if blob is None:
            raise HTTPException(
                status_code=404, detail=f"No process model stored for {product_key}"
            )
        return blob

    @app.put("/api/v1/process-models/{product_key}", tags=["process-models"])
    async def put_process_model(
        product_key: str,
        blob: dict[str, Any] = Body(...),
    ) -> dict[str, Any]:
        """Validate and store a process model blob."""
        saved = await state.orchestrator.save_process_model(product_key, blob)
        return saved.model_dump(by_alias=True, mode="json", exclude_none=True)

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        status_code = _STATUS_BY_KIND.get(exc.kind, 500)
        logger.info(
            "checkout_error",
            kind=exc.kind,
            status_code=status_code,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.kind,
                detail=str(exc),
                status_code=status_code,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "unhandled_exception", error=str(exc), path=request.url.path
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc),
                status_code=500,
            ).model_dump(),
        )

    return app
