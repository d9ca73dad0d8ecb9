"""
Clinical Note Vault - FastAPI Application

Local-first encrypted note storage with de-identification, compliance
auditing and offline sync.

Security Hardening:
- JWT-based authentication required for all protected endpoints
- Rate limiting to prevent abuse (can be disabled in test mode)
- Custom exception handling to prevent PHI leakage
- Database security validation on startup
"""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from vault.app.config import is_test_mode
from vault.app.db.migrate import check_db_security, ensure_schema
from vault.app.logging_config import get_logger
from vault.app.routes import compliance, deidentify, health, notes, sync
from vault.app.security.rate_limit import get_limiter
from vault.app.services.errors import (
    ComplianceViolation,
    DecryptionFailure,
    EncryptionFailure,
    NetworkFailure,
    StorageFailure,
    StoreNotInitialized,
    SyncError,
    VaultError,
)
from vault.app.services.registry import get_services

logger = get_logger("main")

limiter = get_limiter()


def sanitize_error_detail(detail: Any) -> dict:
    """
    Strip anything that is not a pre-built error dict.

    Route code raises ``HTTPException`` with dict details it constructed
    itself; any other detail is replaced by a generic message.
    """
    if isinstance(detail, dict):
        return detail
    return {"error": "internal_error", "message": "An error occurred processing your request"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup: bring the schema up to date, check file hardening and start
    the background sync timer (not under ENV=TEST). On shutdown: stop it.
    """
    services = get_services()
    ensure_schema(services.db_path)

    security_status = check_db_security(services.db_path)
    if not security_status.get("wal_enabled"):
        logger.warning("db_wal_disabled")
    if not security_status.get("permissions_secure"):
        logger.warning("db_permissions_insecure")

    if not is_test_mode():
        services.coordinator.start_background_sync()

    yield

    services.shutdown()


app = FastAPI(
    title="Clinical Note Vault",
    description="Local-first encrypted clinical note storage with compliance auditing and offline sync",
    version="0.1.0",
    lifespan=lifespan,
    debug=False,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Vault errors carry a machine-readable code and a PHI-free message.
_VAULT_ERROR_STATUS = (
    (ComplianceViolation, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DecryptionFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (EncryptionFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (StorageFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
    (NetworkFailure, status.HTTP_502_BAD_GATEWAY),
    (StoreNotInitialized, status.HTTP_409_CONFLICT),
    (SyncError, status.HTTP_409_CONFLICT),
)


@app.exception_handler(VaultError)
async def vault_error_handler(request: Request, exc: VaultError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, mapped in _VAULT_ERROR_STATUS:
        if isinstance(exc, error_class):
            status_code = mapped
            break

    content = {"error": exc.error_code, "message": str(exc)}
    if isinstance(exc, ComplianceViolation):
        content["rule"] = exc.rule

    logger.warning("request_failed", error=exc.error_code, status_code=status_code)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions without leaking PHI."""
    return JSONResponse(
        status_code=exc.status_code,
        content=sanitize_error_detail(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Report field names and error types only. Pydantic errors can echo parts
    of the request body, which may contain note content.
    """
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "type": error["type"],
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all: no stack traces or request data in the response."""
    logger.error("unhandled_exception", error=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "An unexpected error occurred"},
    )


app.include_router(health.router)
app.include_router(notes.router)
app.include_router(compliance.router)
app.include_router(deidentify.router)
app.include_router(sync.router)


@app.get("/")
async def root():
    return {
        "service": "Clinical Note Vault",
        "version": "0.1.0",
        "status": "operational",
    }
