# ==== CASEWATCH MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for casewatch.

Serves case timelines, escalation listings and rule administration. The
periodic evaluation pass runs outside the API process (Prefect flow or CLI).
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from casewatch import __version__
from casewatch.business.errors import (
    ConfigurationError,
    EscalationAlreadyResolvedError,
    EscalationNotFoundError,
    RuleNotFoundError,
)
from casewatch.middleware.company_scope import CompanyScopeMiddleware
from casewatch.middleware.correlation import CorrelationMiddleware
from casewatch.observability.logging import get_logger, init_logging
from casewatch.observability.metrics import init_metrics, metrics_router
from casewatch.observability.tracing import init_tracing
from casewatch.routes import escalations, rules, timeline
from casewatch.settings import settings
from casewatch.storage.db import close_database, init_database


logger = get_logger(__name__)


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager for startup and shutdown operations.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: Control back to FastAPI during application runtime
    """
    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_tracing(settings.SERVICE_NAME)
    init_database()
    logger.info("casewatch API started", environment=settings.APP_ENV, version=__version__)

    yield

    # --► SHUTDOWN SEQUENCE
    await close_database()


# ==== APPLICATION FACTORY ==== #


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title="casewatch",
        description="Case SLA escalation engine",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.APP_ENV == "dev" else None,
        redoc_url="/redoc" if settings.APP_ENV == "dev" else None
    )

    init_metrics(app)

    # --► MIDDLEWARE STACK CONFIGURATION
    # ⚠️ CORS middleware must be added FIRST before other middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(CompanyScopeMiddleware, require_company=True)

    _register_health_endpoints(app)
    _register_routers(app)
    _register_exception_handlers(app)

    FastAPIInstrumentor.instrument_app(app)
    return app


# ==== ENDPOINT REGISTRATION HELPERS ==== #


def _register_health_endpoints(app: FastAPI) -> None:
    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        """Liveness probe endpoint for container orchestration."""
        return {
            "status": "ok",
            "service": settings.SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> dict:
        return {
            "status": "ready",
            "service": settings.SERVICE_NAME,
            "environment": settings.APP_ENV
        }


def _register_routers(app: FastAPI) -> None:
    app.include_router(metrics_router, prefix="", tags=["monitoring"])
    app.include_router(timeline.router, prefix="/cases", tags=["timeline"])
    app.include_router(escalations.router, prefix="/escalations", tags=["escalations"])
    app.include_router(rules.router, prefix="/escalation-rules", tags=["escalation-rules"])


# ==== EXCEPTION HANDLERS ==== #


def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": message,
            "correlation_id": correlation_id,
            "code": code
        }
    )


def _register_exception_handlers(app: FastAPI) -> None:
    """
    Map engine errors that escape a route to HTTP responses.

    Args:
        app (FastAPI): FastAPI application instance
    """
    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error_response(request, 422, "INVALID_RULE", exc.message)

    @app.exception_handler(RuleNotFoundError)
    async def rule_not_found_handler(request: Request, exc: RuleNotFoundError) -> JSONResponse:
        return _error_response(request, 404, "RULE_NOT_FOUND", exc.message)

    @app.exception_handler(EscalationNotFoundError)
    async def escalation_not_found_handler(request: Request, exc: EscalationNotFoundError) -> JSONResponse:
        return _error_response(request, 404, "ESCALATION_NOT_FOUND", exc.message)

    @app.exception_handler(EscalationAlreadyResolvedError)
    async def already_resolved_handler(request: Request, exc: EscalationAlreadyResolvedError) -> JSONResponse:
        return _error_response(request, 409, "ALREADY_RESOLVED", exc.message)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path, error=str(exc))
        return _error_response(request, 500, "INTERNAL_ERROR", "An unexpected error occurred")


app = create_app()
