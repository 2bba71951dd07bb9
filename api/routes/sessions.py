"""
Session Routes
==============

Query session lifecycle: create, run, cancel, inspect, history and feedback.

Run is a blocking pipeline call, so these handlers are plain ``def`` and
execute in the threadpool.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status

from api.schemas import (
    CreateSessionRequest,
    ErrorResponse,
    FeedbackRequest,
    FeedbackResponse,
    RunSessionRequest,
    SessionListResponse,
    SessionResponse,
    feedback_response,
    session_response,
    session_summary,
)
from observability.metrics import track_session_metrics
from report_pilot.service import QueryService

router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions"])

NOT_FOUND = {404: {"model": ErrorResponse, "description": "Unknown session"}}
CONFLICT = {409: {"model": ErrorResponse, "description": "Session is busy or already finished"}}


def get_service(request: Request) -> QueryService:
    """Dependency to get the configured service from app state."""
    return request.app.state.service


ServiceDep = Annotated[QueryService, Depends(get_service)]


@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse, "description": "Unknown data source"}},
    summary="Open a query session",
)
def create_session(body: CreateSessionRequest, service: ServiceDep) -> SessionResponse:
    session = service.create_session(body.question, body.data_source_id, user_id=body.user_id)
    return session_response(service.get_session(session.session_id))


@router.post(
    "/{session_id}/run",
    response_model=SessionResponse,
    responses={**NOT_FOUND, **CONFLICT},
    summary="Run a session",
    description=(
        "Drives the session through generation, validation, cost check and execution "
        "until it finishes, or for at most max_steps transitions."
    ),
)
def run_session(
    session_id: str,
    service: ServiceDep,
    body: RunSessionRequest | None = None,
) -> SessionResponse:
    body = body or RunSessionRequest()
    report = service.run_session(
        session_id,
        max_steps=body.max_steps,
        provider=body.provider,
        sql_override=body.sql_override,
    )
    track_session_metrics(report.session)
    return session_response(report)


@router.post(
    "/{session_id}/cancel",
    response_model=SessionResponse,
    responses=NOT_FOUND,
    summary="Cancel a session",
)
def cancel_session(session_id: str, service: ServiceDep) -> SessionResponse:
    was_terminal = service.get_session(session_id).session.status.is_terminal
    report = service.cancel_session(session_id)
    if not was_terminal:
        track_session_metrics(report.session)
    return session_response(report)


@router.get(
    "/{session_id}",
    response_model=SessionResponse,
    responses=NOT_FOUND,
    summary="Get a session report",
)
def get_session(session_id: str, service: ServiceDep) -> SessionResponse:
    return session_response(service.get_session(session_id))


@router.get(
    "",
    response_model=SessionListResponse,
    summary="Prompt history",
    description="Sessions newest first, filtered by user, data source and question text.",
)
def list_sessions(
    service: ServiceDep,
    user_id: str | None = None,
    data_source_id: str | None = None,
    q: Annotated[str | None, Query(max_length=200)] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> SessionListResponse:
    sessions = service.list_sessions(user_id=user_id, data_source_id=data_source_id, text=q, limit=limit)
    return SessionListResponse(sessions=[session_summary(s) for s in sessions], count=len(sessions))


@router.post(
    "/{session_id}/feedback",
    response_model=FeedbackResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**NOT_FOUND, **CONFLICT},
    summary="Rate a finished session",
    description="A corrected SQL that passes validation becomes a retrieval example.",
)
def submit_feedback(session_id: str, body: FeedbackRequest, service: ServiceDep) -> FeedbackResponse:
    receipt = service.submit_feedback(
        session_id,
        body.rating,
        corrected_sql=body.corrected_sql,
        comment=body.comment,
    )
    return feedback_response(receipt)
