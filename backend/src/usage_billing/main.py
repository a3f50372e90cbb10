"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.api.errors import error_response
from usage_billing.api.v1.usage import LEGACY_USAGE_PATH, USAGE_PATH
from usage_billing.config import settings
from usage_billing.metrics import usage_events_rejected_total
from usage_billing.middleware.logging import LoggingMiddleware, request_id_for, setup_logging
from usage_billing.middleware.metrics import MetricsMiddleware
from usage_billing.schemas.error import PYDANTIC_ERROR_CODES, REMEDIATION_HINTS, ErrorCode, ErrorDetail

# Setup structured logging
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the Dwolla adapter (HTTP client and token cache) for the process lifetime."""
    logger.info("application_starting", env=settings.app_env, dwolla_environment=settings.dwolla_environment)
    app.state.dwolla = DwollaAdapter()
    try:
        yield
    finally:
        await app.state.dwolla.aclose()
        logger.info("application_shutting_down")


app = FastAPI(
    title="Usage Billing Service",
    description="Records CRM usage, bills it weekly over ACH and reconciles transfer status",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

# Mount Prometheus metrics endpoint
app.mount("/metrics", make_asgi_app())

if settings.otel_enabled:
    from usage_billing.tracing import setup_tracing

    setup_tracing(app)


def _validation_code(error: dict) -> str:
    # Units and timestamps get their own codes; an email failure is a value_error on the email field
    loc = error.get("loc", ())
    if error["type"] == "value_error" and loc and loc[-1] == "email":
        return ErrorCode.INVALID_EMAIL
    return PYDANTIC_ERROR_CODES.get(error["type"], ErrorCode.VALIDATION_ERROR)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle Pydantic validation errors with structured response.

    Returns 422 with detailed field-level validation errors. Nothing has been
    written when this handler runs.
    """
    details = []
    for error in exc.errors():
        details.append(
            ErrorDetail(
                code=_validation_code(error),
                message=error["msg"],
                field=".".join(str(loc) for loc in error["loc"]),
                value=error.get("input"),
            )
        )

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id_for(request),
        error_count=len(details),
        codes=sorted({d.code for d in details}),
    )

    if request.url.path in (USAGE_PATH, LEGACY_USAGE_PATH):
        usage_events_rejected_total.labels(reason="validation_error").inc()

    remediation = next(
        (REMEDIATION_HINTS[d.code] for d in details if d.code in REMEDIATION_HINTS),
        "Check the API documentation for correct request format at /docs",
    )
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error="ValidationError",
        message="Request validation failed",
        code=ErrorCode.VALIDATION_ERROR,
        details=details,
        remediation=remediation,
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """
    Handle database errors.

    Returns 503 Service Unavailable for database connection issues.
    """
    logger.error(
        "database_error",
        path=request.url.path,
        method=request.method,
        request_id=request_id_for(request),
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    # Don't expose internal database details in production
    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return error_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        error="DatabaseError",
        message="A database error occurred",
        code=ErrorCode.DATABASE_ERROR,
        detail_message=error_message,
        headers={"Retry-After": "30"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle all other uncaught exceptions.

    Logs the stack trace and returns a safe error message to the client.
    """
    logger.exception(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        request_id=request_id_for(request),
        exception_type=type(exc).__name__,
        exc_info=exc,
    )

    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error="InternalServerError",
        message="An unexpected error occurred",
        code=ErrorCode.INTERNAL_ERROR,
        detail_message=str(exc) if settings.debug else "Internal server error",
        remediation="Please contact support with the request ID",
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "Usage Billing Service",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


# Include routers
from usage_billing.api.v1 import billing, health, usage  # noqa: E402
from usage_billing.api.webhooks import dwolla  # noqa: E402

app.include_router(health.router, tags=["Health"])
app.include_router(usage.router)
app.include_router(billing.router)
app.include_router(dwolla.router)
app.include_router(usage.legacy_router)
app.include_router(billing.legacy_router)
app.include_router(dwolla.legacy_router)
