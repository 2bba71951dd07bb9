"""
Health Check Routes
===================

Liveness, readiness and overall health of the query service, plus the
per-provider health verdicts kept by the router.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request

from api import __version__
from api.schemas import (
    HealthResponse,
    HealthStatus,
    ProviderHealthEntry,
    ProviderHealthResponse,
    ReadinessResponse,
)
from report_pilot.service import QueryService

router = APIRouter(tags=["Health"])


def _service(request: Request) -> Optional[QueryService]:
    return getattr(request.app.state, "service", None)


def _indexed_sources(service: QueryService) -> dict[str, bool]:
    """Whether each data source with metadata has documents in the retrieval index."""
    return {
        data_source_id: bool(service.retrieval.index_store.document_ids(data_source_id))
        for data_source_id in service.data_sources.ids()
        if service.context_store.has_data_source(data_source_id)
    }


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service status; degraded while no LLM provider is healthy",
)
async def health_check(request: Request) -> HealthResponse:
    service = _service(request)
    providers = service.provider_health() if service else []
    checks = {
        "api": True,
        "service": service is not None,
        "providers": any(p["enabled"] and p["healthy"] for p in providers),
    }

    if not checks["service"]:
        status = HealthStatus.UNHEALTHY
    elif all(checks.values()):
        status = HealthStatus.HEALTHY
    else:
        status = HealthStatus.DEGRADED

    return HealthResponse(
        status=status,
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description="Ready once data sources are registered and their retrieval index is built",
)
async def readiness_check(request: Request) -> ReadinessResponse:
    service = _service(request)
    indexed = _indexed_sources(service) if service else {}
    checks = {
        "service_built": service is not None,
        "data_sources_registered": bool(indexed),
        "retrieval_index_built": bool(indexed) and all(indexed.values()),
    }
    return ReadinessResponse(ready=all(checks.values()), checks=checks)


@router.get("/live", summary="Liveness check")
async def liveness_check() -> dict:
    return {"status": "ok"}


@router.get(
    "/api/v1/providers/health",
    response_model=ProviderHealthResponse,
    summary="LLM provider health",
    description="Enabled flag, health verdict and recent failures per provider",
)
async def provider_health(request: Request) -> ProviderHealthResponse:
    service = request.app.state.service
    return ProviderHealthResponse(
        providers=[ProviderHealthEntry(**entry) for entry in service.provider_health()]
    )
