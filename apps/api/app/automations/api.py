from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.automations.schemas import (
    AutomationCreate,
    AutomationFlowUpdate,
    AutomationRead,
    AutomationStepRead,
    AutomationUpdate,
    AutomationValidationRead,
    EmailTemplateCreate,
    EmailTemplateRead,
    EmailTemplateUpdate,
)
from app.automations.service import AutomationService, EmailTemplateService
from app.core.database import get_db
from app.leads.api import error_response, get_current_user, require_authenticated
from app.leads.service import ActorUser


workspace_automations_router = APIRouter(prefix="/api/workspaces", tags=["automations"])
automations_router = APIRouter(prefix="/api/automations", tags=["automations"])

automation_service = AutomationService()
email_template_service = EmailTemplateService()


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@workspace_automations_router.get("/{workspace_id}/automations", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRead] | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.list_automations(db, user, workspace_id)
    except HTTPException as exc:
        return _failure(request, exc, "automation_list_failed")


@workspace_automations_router.post(
    "/{workspace_id}/automations",
    response_model=AutomationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_automation(
    request: Request,
    workspace_id: uuid.UUID,
    dto: AutomationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.create_automation(db, user, workspace_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "automation_create_failed")


@automations_router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.get_automation(db, user, automation_id)
    except HTTPException as exc:
        return _failure(request, exc, "automation_get_failed")


@automations_router.patch("/{automation_id}", response_model=AutomationRead)
def update_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.update_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "automation_update_failed")


@automations_router.put("/{automation_id}/flow", response_model=AutomationRead)
def save_automation_flow(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationFlowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.save_flow(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "automation_flow_save_failed")


@automations_router.delete("/{automation_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_authenticated(user)
        automation_service.delete_automation(db, user, automation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failure(request, exc, "automation_delete_failed")


@automations_router.post("/{automation_id}/validate", response_model=AutomationValidationRead)
def validate_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationValidationRead | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.validate(db, user, automation_id)
    except HTTPException as exc:
        return _failure(request, exc, "automation_validate_failed")


@automations_router.get("/{automation_id}/steps", response_model=list[AutomationStepRead])
def list_automation_steps(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationStepRead] | JSONResponse:
    try:
        require_authenticated(user)
        return automation_service.list_steps(db, user, automation_id)
    except HTTPException as exc:
        return _failure(request, exc, "automation_steps_failed")


@workspace_automations_router.get("/{workspace_id}/email-templates", response_model=list[EmailTemplateRead])
def list_email_templates(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[EmailTemplateRead] | JSONResponse:
    try:
        require_authenticated(user)
        return email_template_service.list_templates(db, user, workspace_id)
    except HTTPException as exc:
        return _failure(request, exc, "email_template_list_failed")


@workspace_automations_router.post(
    "/{workspace_id}/email-templates",
    response_model=EmailTemplateRead,
    status_code=status.HTTP_201_CREATED,
)
def create_email_template(
    request: Request,
    workspace_id: uuid.UUID,
    dto: EmailTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_authenticated(user)
        return email_template_service.create_template(db, user, workspace_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "email_template_create_failed")


@workspace_automations_router.get("/{workspace_id}/email-templates/{template_id}", response_model=EmailTemplateRead)
def get_email_template(
    request: Request,
    workspace_id: uuid.UUID,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_authenticated(user)
        return email_template_service.get_template(db, user, workspace_id, template_id)
    except HTTPException as exc:
        return _failure(request, exc, "email_template_get_failed")


@workspace_automations_router.patch("/{workspace_id}/email-templates/{template_id}", response_model=EmailTemplateRead)
def update_email_template(
    request: Request,
    workspace_id: uuid.UUID,
    template_id: uuid.UUID,
    dto: EmailTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_authenticated(user)
        return email_template_service.update_template(db, user, workspace_id, template_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "email_template_update_failed")


@workspace_automations_router.delete(
    "/{workspace_id}/email-templates/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
)
def delete_email_template(
    request: Request,
    workspace_id: uuid.UUID,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        require_authenticated(user)
        email_template_service.delete_template(db, user, workspace_id, template_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return _failure(request, exc, "email_template_delete_failed")
