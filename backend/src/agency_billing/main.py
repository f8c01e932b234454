"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from agency_billing.adapters.fallback.registry import build_default_registry
from agency_billing.config import Settings, get_settings
from agency_billing.database import create_engine_from_settings, create_session_factory
from agency_billing.errors import (
    BillingError,
    ControlTotalsMismatch,
    DecryptionFailed,
    InvalidBillingInput,
    InvalidStateTransition,
    NotFound,
    ProviderError,
)
from agency_billing.middleware.logging import LoggingMiddleware, setup_logging
from agency_billing.middleware.metrics import MetricsMiddleware
from agency_billing.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse
from agency_billing.storage.artifact_store import build_artifact_store

logger = structlog.get_logger(__name__)

# Most specific first
_STATUS_BY_ERROR = [
    (InvalidBillingInput, status.HTTP_400_BAD_REQUEST, "ValidationError"),
    (ControlTotalsMismatch, status.HTTP_422_UNPROCESSABLE_ENTITY, "ControlTotalsMismatch"),
    (NotFound, status.HTTP_404_NOT_FOUND, "NotFound"),
    (InvalidStateTransition, status.HTTP_409_CONFLICT, "Conflict"),
    (ProviderError, status.HTTP_502_BAD_GATEWAY, "ProviderError"),
    (DecryptionFailed, status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalServerError"),
]


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


def _error_response(request: Request, status_code: int, body: ErrorResponse, headers: Optional[dict] = None) -> JSONResponse:
    body.request_id = _request_id(request)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """
    Map billing errors to structured responses.

    Validation 400, control totals 422, not found 404, state 409, provider
    502, crypto 500 with a generic message.
    """
    status_code, error = status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalServerError"
    for error_type, code, name in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code, error = code, name
            break

    message = exc.message
    details = None
    if isinstance(exc, ControlTotalsMismatch):
        details = [ErrorDetail(code=exc.code, message=item) for item in exc.errors]
    if status_code >= 500 and not isinstance(exc, ProviderError):
        message = "An unexpected error occurred"

    log = logger.error if status_code >= 500 else logger.warning
    log("billing_error", path=request.url.path, error_code=exc.code, status_code=status_code)

    return _error_response(
        request,
        status_code,
        ErrorResponse(
            error=error,
            message=message,
            details=details,
            remediation=REMEDIATION_HINTS.get(exc.code),
        ),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation errors with field-level details (422)."""
    details = []
    for error in exc.errors():
        code = ErrorCode.MISSING_REQUIRED_FIELD if error["type"] == "missing" else ErrorCode.INVALID_INPUT
        details.append(
            ErrorDetail(
                code=code,
                message=error["msg"],
                field=".".join(str(loc) for loc in error["loc"]),
            )
        )
    logger.warning("validation_error", path=request.url.path, error_count=len(details))
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorResponse(
            error="ValidationError",
            message="Request validation failed",
            details=details,
            remediation="Check the API documentation for the request format at /docs",
        ),
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Database errors answer 503 without internal details."""
    logger.error("database_error", path=request.url.path, error_type=type(exc).__name__)
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        ErrorResponse(error="DatabaseError", message="Database temporarily unavailable"),
        headers={"Retry-After": "30"},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else answers 500 with a safe message; the stack trace is logged."""
    logger.exception("unhandled_exception", path=request.url.path, exception_type=type(exc).__name__)
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(
            error="InternalServerError",
            message="An unexpected error occurred",
            details=[ErrorDetail(code=ErrorCode.INTERNAL_ERROR, message="Internal server error")],
            remediation="Please contact support with the request ID",
        ),
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Settings are read once here; engine, session factory, artifact store and
    fallback registry hang off ``app.state`` for the request dependencies.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("application_starting", env=settings.app_env, pd_adapter=settings.pd_adapter)
        yield
        await app.state.engine.dispose()
        logger.info("application_shutting_down")

    app = FastAPI(
        title="Agency Billing",
        description="Recurring billing and collections engine for agency tenants",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    engine = create_engine_from_settings(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.artifact_store = build_artifact_store(settings)
    app.state.fallback_registry = build_default_registry(settings.fallback_default_provider)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.mount("/metrics", make_asgi_app())

    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    from agency_billing.api.v1 import adjustments, collections, health, subscription

    app.include_router(health.router, tags=["Health"])
    app.include_router(subscription.router, prefix="/api/v1")
    app.include_router(adjustments.router, prefix="/api/v1")
    app.include_router(collections.router, prefix="/api/v1")

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Service information."""
        return {
            "service": "Agency Billing",
            "version": "0.1.0",
            "status": "operational",
            "docs": "/docs",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
