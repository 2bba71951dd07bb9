"""
FastAPI Application
===================

Main FastAPI application for the Report Pilot query service.

Without provider credentials the service runs in demo mode: a scripted
``MockLLM`` answers questions about the sample customers/orders/products
database.
"""

import json
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import __version__
from api.middleware.telemetry import TelemetryMiddleware
from api.routes import health_router, rag_router, sessions_router
from api.schemas import ErrorResponse
from observability.logging_config import get_logger, setup_logging
from observability.metrics import metrics_endpoint, setup_metrics
from observability.tracing import setup_tracing
from report_pilot.config import Settings
from report_pilot.datasources import DataSourceRegistry, create_data_source
from report_pilot.errors import (
    FeedbackRejected,
    InvalidSessionState,
    ReportPilotError,
    SessionBusy,
    SessionNotFound,
    UnknownDataSource,
)
from report_pilot.llm import GeminiProvider, LLMProvider, MockLLM, OpenAIProvider
from report_pilot.retrieval import create_embedder
from report_pilot.sample import SAMPLE_DATA_SOURCE_ID, build_sample_store, create_sample_database
from report_pilot.service import QueryService, build_service

logger = get_logger(__name__)


def _answer(sql: str, rationale: str, citations: list[str]) -> str:
    return json.dumps({"sql": sql, "rationale": rationale, "citations": citations})


DEMO_RESPONSES = {
    "premium": [
        _answer(
            "SELECT name, email FROM customers WHERE tier = 'premium'",
            "Premium customers are flagged by the tier column.",
            ["main.customers"],
        )
    ],
    "revenue": [
        _answer(
            "SELECT SUM(amount) AS revenue FROM orders WHERE status <> 'cancelled'",
            "Revenue is the sum of order amounts, excluding cancelled orders.",
            ["main.orders"],
        )
    ],
    "how many customers": [
        _answer("SELECT COUNT(*) AS customer_count FROM customers", "Count customer rows.", ["main.customers"])
    ],
    "orders": [
        _answer(
            "SELECT id, customer_id, amount, order_date, status FROM orders ORDER BY order_date DESC LIMIT 20",
            "Most recent orders first.",
            ["main.orders"],
        )
    ],
    "products": [
        _answer(
            "SELECT name, price, category, stock FROM products ORDER BY name",
            "All products with price and stock.",
            ["main.products"],
        )
    ],
}


def create_providers() -> dict[str, LLMProvider]:
    """Hosted providers for every configured API key, or the demo mock."""
    providers: dict[str, LLMProvider] = {}
    if os.getenv("OPENAI_API_KEY"):
        providers["openai"] = OpenAIProvider(
            api_key=os.environ["OPENAI_API_KEY"],
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        )
    if os.getenv("GEMINI_API_KEY"):
        providers["gemini"] = GeminiProvider(
            api_key=os.environ["GEMINI_API_KEY"],
            model=os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
        )
    if not providers:
        providers["mock"] = MockLLM(responses=DEMO_RESPONSES)
    return providers


def create_service(settings: Optional[Settings] = None) -> QueryService:
    """Build the demo service over the sample SQLite database."""
    settings = settings or Settings.from_env()
    db_path = os.getenv("REPORT_PILOT_SQLITE_PATH") or str(
        Path(tempfile.gettempdir()) / "report_pilot_demo.sqlite3"
    )
    create_sample_database(db_path)

    data_sources = DataSourceRegistry()
    data_sources.register(SAMPLE_DATA_SOURCE_ID, create_data_source("sqlite", db_path))

    service = build_service(
        context_store=build_sample_store(),
        data_sources=data_sources,
        providers=create_providers(),
        settings=settings,
        embedder=create_embedder(settings.embedder, api_key=os.getenv("OPENAI_API_KEY")),
    )
    service.warm_up()
    return service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan handler."""
    setup_logging()
    logger.info("starting_report_pilot_api", version=__version__)

    owns_service = getattr(app.state, "service", None) is None
    if owns_service:
        app.state.service = create_service()

    yield

    logger.info("shutting_down_report_pilot_api")
    if owns_service:
        app.state.service.close()
        app.state.service = None


def _error(request: Request, status_code: int, exc: Exception, message: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=type(exc).__name__,
            message=message or str(exc),
            request_id=getattr(request.state, "request_id", None),
        ).model_dump(),
    )


def create_app(service: Optional[QueryService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Pre-built service (tests); built from the environment at
            startup when omitted
    """
    app = FastAPI(
        title="Report Pilot API",
        description=(
            "Natural-language questions to validated, cost-checked, read-only SQL "
            "with a full audit trail of every attempt."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(TelemetryMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(rag_router)

    setup_metrics(app, version=__version__, environment=os.getenv("ENVIRONMENT", "development"))
    app.add_route("/metrics", metrics_endpoint)

    # Tracing only exports when a collector is configured
    if os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        setup_tracing(app, version=__version__)

    @app.exception_handler(SessionNotFound)
    async def not_found_handler(request: Request, exc: SessionNotFound) -> JSONResponse:
        return _error(request, 404, exc)

    @app.exception_handler(InvalidSessionState)
    async def invalid_state_handler(request: Request, exc: InvalidSessionState) -> JSONResponse:
        return _error(request, 409, exc)

    @app.exception_handler(SessionBusy)
    async def busy_handler(request: Request, exc: SessionBusy) -> JSONResponse:
        return _error(request, 409, exc)

    @app.exception_handler(FeedbackRejected)
    async def feedback_handler(request: Request, exc: FeedbackRejected) -> JSONResponse:
        return _error(request, 422, exc)

    @app.exception_handler(UnknownDataSource)
    async def data_source_handler(request: Request, exc: UnknownDataSource) -> JSONResponse:
        return _error(request, 422, exc)

    @app.exception_handler(ValueError)
    async def bad_input_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(request, 400, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="RequestValidationError",
                message="Request failed validation",
                request_id=getattr(request.state, "request_id", None),
                details={"errors": jsonable_encoder(exc.errors())},
            ).model_dump(),
        )

    @app.exception_handler(ReportPilotError)
    async def pipeline_error_handler(request: Request, exc: ReportPilotError) -> JSONResponse:
        logger.error("unhandled_pipeline_error", error=str(exc), error_type=type(exc).__name__)
        return _error(request, 500, exc, message="The query pipeline failed")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.exception("unhandled_exception", error_type=type(exc).__name__)
        return _error(request, 500, exc, message="An unexpected error occurred")

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENVIRONMENT", "development") == "development",
    )
