"""
FastAPI application.

``create_app`` wires the orchestrator, ledger and webhook ingester from
settings (or takes prebuilt services for tests) and maps domain errors to
HTTP status codes.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.concurrency import run_in_threadpool

from ..billing.webhook import WebhookIngester
from ..config.loader import Settings, configure_logging, load_settings
from ..core.errors import (
    AuthError,
    InsufficientCreditError,
    SignatureError,
    TriageGuardError,
    ValidationError,
)
from ..core.orchestrator import TriageOrchestrator, TriageRequest, UsageMode
from ..providers import GeminiAdapter, OpenRouterAdapter, ProviderAdapter
from ..storage.db import initialize_schema
from ..storage.ledger import Ledger, build_ledger
from ..storage.repository import RunRepository, WebhookEventRepository
from .schemas import TriageRequestBody


logger = logging.getLogger(__name__)

CALLER_ID_HEADER = "X-Caller-Id"
SIGNATURE_HEADER = "stripe-signature"

IdentityResolver = Callable[[Request], Optional[str]]


def header_identity(request: Request) -> Optional[str]:
    """Read the opaque caller id set by the fronting auth layer."""
    value = request.headers.get(CALLER_ID_HEADER)
    if value and value.strip():
        return value.strip()
    return None


@dataclass
class AppServices:
    """Collaborators shared by all request handlers."""
    settings: Settings
    ledger: Ledger
    runs: RunRepository
    orchestrator: TriageOrchestrator
    ingester: WebhookIngester


def build_adapters(settings: Settings) -> Dict[str, ProviderAdapter]:
    tuning = settings.tuning
    return {
        "openrouter": OpenRouterAdapter(
            timeout_seconds=tuning.provider_timeout_seconds,
            rate_limit_backoff_seconds=tuning.rate_limit_backoff_seconds,
            data_policy=settings.openrouter_data_policy,
        ),
        "gemini": GeminiAdapter(
            timeout_seconds=tuning.provider_timeout_seconds,
            rate_limit_backoff_seconds=tuning.rate_limit_backoff_seconds,
        ),
    }


def build_services(settings: Settings) -> AppServices:
    """Create the schema and every collaborator from settings."""
    initialize_schema(settings.db_path)
    tuning = settings.tuning
    ledger = build_ledger(
        db_path=settings.db_path,
        disabled=settings.ledger_disabled,
        conversion_rate=tuning.credit_conversion_rate,
    )
    runs = RunRepository(settings.db_path)
    orchestrator = TriageOrchestrator(
        ledger=ledger,
        adapters=build_adapters(settings),
        runs=runs,
        credentials=settings.managed_credentials,
        currency=settings.currency,
        max_attempts=tuning.max_attempts,
        buffer_multiplier=tuning.estimate_buffer_multiplier,
    )
    ingester = WebhookIngester(
        ledger=ledger,
        events=WebhookEventRepository(settings.db_path),
        currency=settings.currency,
    )
    return AppServices(
        settings=settings,
        ledger=ledger,
        runs=runs,
        orchestrator=orchestrator,
        ingester=ingester,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def require_caller(request: Request) -> str:
    caller_id = request.app.state.identity_resolver(request)
    if not caller_id:
        raise AuthError("Sign in required.")
    return caller_id


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request body.")

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(AuthError)
    async def _auth(request: Request, exc: AuthError):
        return _error(401, str(exc))

    @app.exception_handler(InsufficientCreditError)
    async def _insufficient_credit(request: Request, exc: InsufficientCreditError):
        return _error(
            402,
            str(exc),
            balanceCents=exc.balance_cents,
            estimatedCostCents=exc.requested_cents,
        )

    @app.exception_handler(SignatureError)
    async def _signature(request: Request, exc: SignatureError):
        logger.warning("Rejected webhook delivery: %s", exc)
        return _error(400, "Invalid webhook signature.")

    @app.exception_handler(TriageGuardError)
    async def _domain(request: Request, exc: TriageGuardError):
        logger.error("Request failed: %s", exc)
        return _error(500, "Unexpected server error.")

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Unexpected server error.")


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AppServices] = None,
    identity_resolver: IdentityResolver = header_identity,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Runtime settings; loaded from the environment when None
        services: Prebuilt collaborators; built from settings when None
        identity_resolver: Maps a request to a caller id

    Returns:
        Configured FastAPI app
    """
    if services is None:
        settings = settings or load_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)

    app = FastAPI(title="Triage Guard")
    app.state.services = services
    app.state.identity_resolver = identity_resolver
    register_error_handlers(app)

    @app.get("/health")
    def health(services: AppServices = Depends(get_services)):
        return {
            "status": "ok",
            "ledgerActive": services.ledger.is_active,
            "providers": sorted(services.orchestrator.adapters),
        }

    @app.post("/triage")
    def triage(
        body: TriageRequestBody,
        request: Request,
        services: AppServices = Depends(get_services),
    ):
        try:
            heuristics = body.heuristics.to_criteria() if body.heuristics else None
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        outcome = services.orchestrator.run(TriageRequest(
            record=body.record.to_record(),
            criteria_text=body.to_criteria_text(),
            provider=body.provider,
            mode=UsageMode.parse(body.mode),
            heuristics=heuristics,
            reasoning_effort=body.reasoning_effort,
            model_id=body.model_id,
            caller_id=app.state.identity_resolver(request),
            api_key=body.api_key,
        ))
        return outcome.to_dict()

    @app.get("/runs")
    def runs(
        caller_id: str = Depends(require_caller),
        services: AppServices = Depends(get_services),
    ):
        limit = services.settings.tuning.run_history_limit
        return {"runs": [run.to_dict() for run in services.runs.recent_runs(caller_id, limit=limit)]}

    @app.get("/billing/balance")
    def balance(
        caller_id: str = Depends(require_caller),
        services: AppServices = Depends(get_services),
    ):
        snapshot = services.ledger.balance(caller_id)
        return {**snapshot.to_dict(), "ledgerActive": services.ledger.is_active}

    @app.post("/billing/webhook")
    async def billing_webhook(request: Request, services: AppServices = Depends(get_services)):
        try:
            payload = (await request.body()).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureError("Webhook payload is not valid UTF-8.") from exc
        await run_in_threadpool(
            services.ingester.ingest,
            payload,
            request.headers.get(SIGNATURE_HEADER),
            services.settings.webhook_secret or "",
        )
        return {"received": True}

    return app
