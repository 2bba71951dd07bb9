"""
RAG Routes
==========

Retrieval index maintenance.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from api.routes.sessions import get_service
from api.schemas import ErrorResponse, ReindexRequest, ReindexResponse, reindex_response
from report_pilot.service import QueryService

router = APIRouter(prefix="/api/v1/rag", tags=["RAG"])


@router.post(
    "/reindex",
    response_model=ReindexResponse,
    responses={422: {"model": ErrorResponse, "description": "Unknown data source"}},
    summary="Rebuild the retrieval index of a data source",
)
def reindex(body: ReindexRequest, service: Annotated[QueryService, Depends(get_service)]) -> ReindexResponse:
    report = service.reindex(body.data_source_id, wait=body.wait)
    return reindex_response(body.data_source_id, report if body.wait else None)
