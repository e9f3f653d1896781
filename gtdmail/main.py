"""
FastAPI application entry point.

Run with:
    uvicorn gtdmail.main:create_app --factory --port 8000

create_app() wires every collaborator explicitly from one Settings
instance; nothing below it reads configuration on its own.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gtdmail.api.routes_accounts import router as accounts_router
from gtdmail.api.routes_classification import router as classification_router
from gtdmail.api.routes_emails import router as emails_router
from gtdmail.classification.engine import RuleEngine
from gtdmail.classification.orchestrator import ClassificationOrchestrator
from gtdmail.classification.rules import YamlRuleStore
from gtdmail.classification.storage import (
    BackupStore,
    ClassificationStore,
    FileBackupStore,
    InMemoryClassificationStore,
)
from gtdmail.config import Settings, get_settings
from gtdmail.errors import (
    AccountNotFoundError,
    AuthExpiredError,
    FetchTimeoutError,
    GtdMailError,
    InvalidClassificationRequest,
    InvalidGrantError,
    ProviderError,
    StorageError,
    TransientNetworkError,
    UnsupportedProviderError,
)
from gtdmail.logging.config import current_user_var, request_id_var, setup_logging
from gtdmail.mail.service import MailService
from gtdmail.vault.store import AccountStore, InMemoryAccountStore
from gtdmail.vault.vault import CredentialVault

logger = logging.getLogger(__name__)

# Checked in order; the first matching class decides the response.
ERROR_RESPONSES: tuple[tuple[type[GtdMailError], int, str], ...] = (
    (InvalidGrantError, 401, "account_disconnected"),
    (AuthExpiredError, 401, "auth_expired"),
    (FetchTimeoutError, 504, "fetch_timeout"),
    (TransientNetworkError, 503, "provider_unavailable"),
    (ProviderError, 502, "provider_error"),
    (UnsupportedProviderError, 400, "unsupported_provider"),
    (AccountNotFoundError, 404, "account_not_found"),
    (InvalidClassificationRequest, 400, "invalid_request"),
    (StorageError, 500, "storage_error"),
)


def error_status(exc: GtdMailError) -> tuple[int, str]:
    for error_cls, status_code, code in ERROR_RESPONSES:
        if isinstance(exc, error_cls):
            return status_code, code
    return 500, "internal_error"


def create_app(
    settings: Optional[Settings] = None,
    *,
    http: Optional[httpx.AsyncClient] = None,
    rule_engine: Optional[RuleEngine] = None,
    account_store: Optional[AccountStore] = None,
    classification_store: Optional[ClassificationStore] = None,
    backups: Optional[BackupStore] = None,
) -> FastAPI:
    """Build the app. Collaborators not passed in are built from settings."""
    settings = settings or get_settings()

    # --- Initialize logging FIRST ---
    setup_logging(level=settings.log_level)

    http = http or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    account_store = account_store or InMemoryAccountStore()
    if rule_engine is None:
        rule_engine = RuleEngine(YamlRuleStore(settings.rules_config_path).list_rules())

    vault = CredentialVault(settings, account_store, http)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await http.aclose()

    app = FastAPI(
        title=settings.app_name,
        docs_url="/docs" if settings.app_env == "development" else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rule_engine = rule_engine
    app.state.mail_service = MailService(settings, account_store, vault, http)
    app.state.orchestrator = ClassificationOrchestrator(
        rule_engine,
        classification_store or InMemoryClassificationStore(),
        backups or FileBackupStore(settings.backup_dir),
    )

    # --- Middleware: Request context + logging ---
    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Set up request ID, user context, and request timing."""
        req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(req_id)
        current_user_var.set(request.headers.get("X-User-ID") or "anonymous")

        start = time.monotonic()
        response = await call_next(request)
        response.headers["X-Request-ID"] = req_id

        logger.info(
            "http.request",
            extra={
                "action": "http.request",
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return response

    # --- Errors: taxonomy -> HTTP ---
    @app.exception_handler(GtdMailError)
    async def gtdmail_error_handler(request: Request, exc: GtdMailError):
        status_code, code = error_status(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "http.error",
            extra={
                "action": "http.error",
                "path": request.url.path,
                "status_code": status_code,
                "error_code": code,
                "error_type": type(exc).__name__,
            },
        )
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": code, "detail": str(exc)},
        )

    # --- Register route modules ---
    app.include_router(accounts_router)
    app.include_router(emails_router)
    app.include_router(classification_router)

    # --- Health check endpoints ---
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        checks = {
            "config_loaded": True,
            "rules_loaded": bool(rule_engine.rules),
            "gmail_client_id_set": bool(settings.gmail_client_id),
            "outlook_client_id_set": bool(settings.outlook_client_id),
        }
        all_ok = all(checks.values())
        return {"status": "ready" if all_ok else "not_ready", "checks": checks}

    return app
