from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.leads.schemas import (
    LeadCaptureRequest,
    LeadCaptureResponse,
    LeadCreate,
    LeadEventRead,
    LeadPage,
    LeadRead,
    LeadScoreUpdate,
    LeadStats,
    LeadStatusUpdate,
    LeadTagsAdd,
    LeadUpdate,
    SubmissionAccepted,
    SubmissionCreate,
)
from app.leads.service import ActorUser, LeadService, SubmissionIntakeService


logger = logging.getLogger("app.leads.intake")

public_router = APIRouter(prefix="/api", tags=["leads.intake"])
workspace_leads_router = APIRouter(prefix="/api/workspaces", tags=["leads"])
leads_router = APIRouter(prefix="/api/leads", tags=["leads"])

lead_service = LeadService()
intake_service = SubmissionIntakeService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    normalized_roles = {str(role).lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_authenticated(user: ActorUser) -> None:
    if user.user_id == "anonymous":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")


@public_router.post(
    "/projects/{project_id}/submissions",
    response_model=SubmissionAccepted,
    status_code=status.HTTP_201_CREATED,
)
def submit_form(
    request: Request,
    project_id: uuid.UUID,
    dto: SubmissionCreate,
    db: Session = Depends(get_db),
) -> SubmissionAccepted | JSONResponse:
    try:
        submission = intake_service.record_submission(db, project_id, dto.data, dto.utm, dto.submission_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="submission_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )

    # The raw submission is stored; from here on the form always gets a success.
    try:
        result = intake_service.process_new_submission(db, project_id, dto.data, submission.id, dto.utm)
    except Exception as exc:
        db.rollback()
        logger.exception(
            "lead.intake.failed",
            extra={"project_id": str(project_id), "submission_id": str(submission.id), "error": str(exc)},
        )
        return SubmissionAccepted(submission_id=submission.id, outcome="failed")
    return SubmissionAccepted(submission_id=submission.id, lead_id=result.lead_id, outcome=result.outcome)


@leads_router.post("/capture", response_model=LeadCaptureResponse)
def capture_lead(
    request: Request,
    dto: LeadCaptureRequest,
    db: Session = Depends(get_db),
) -> LeadCaptureResponse | JSONResponse:
    context = getattr(request.state, "context", None)
    metadata = {
        "user_agent": getattr(context, "user_agent", None),
        "ip": getattr(context, "client_ip", None) or "unknown",
        "referer": getattr(context, "referer", None),
    }
    try:
        result = intake_service.capture_lead(db, dto, metadata)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_capture_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    if result.lead_id is None:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="lead_capture_failed",
            message="email is required",
        )
    return LeadCaptureResponse(lead_id=result.lead_id, outcome=result.outcome)


@workspace_leads_router.get("/{workspace_id}/leads", response_model=LeadPage)
def list_leads(
    request: Request,
    workspace_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    search: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadPage | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_leads(
            db,
            user,
            workspace_id,
            page=page,
            page_size=page_size,
            search=search,
            status_filter=status_filter,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workspace_leads_router.post("/{workspace_id}/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    workspace_id: uuid.UUID,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.create_lead(db, user, workspace_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@workspace_leads_router.get("/{workspace_id}/leads/stats", response_model=LeadStats)
def get_lead_stats(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadStats | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.get_stats(db, user, workspace_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_stats_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.patch("/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/{lead_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_authenticated(user)
        lead_service.delete_lead(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/status", response_model=LeadRead)
def update_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.update_status(db, user, lead_id, dto.status)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_status_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/tags", response_model=LeadRead)
def add_lead_tags(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadTagsAdd,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.add_tags(db, user, lead_id, dto.tags)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_tags_add_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.delete("/{lead_id}/tags/{tag}", response_model=LeadRead)
def remove_lead_tag(
    request: Request,
    lead_id: uuid.UUID,
    tag: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.remove_tag(db, user, lead_id, tag)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_tag_remove_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/score", response_model=LeadRead)
def update_lead_score(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadScoreUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.update_score(db, user, lead_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_score_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.get("/{lead_id}/events", response_model=list[LeadEventRead])
def list_lead_events(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadEventRead] | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.list_events(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_events_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@leads_router.post("/{lead_id}/analysis", response_model=LeadRead)
def analyze_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_authenticated(user)
        return lead_service.analyze_lead(db, user, lead_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="lead_analysis_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
