from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from app.automations.executor import RunReport, RunError, RunState, WorkflowExecutor
from app.automations.graph import validate_flow
from app.automations.matcher import FORM_SUBMISSION_TRIGGER, AutomationMatcher, TriggerContext
from app.automations.models import Automation, AutomationScheduledStep, AutomationStepRecord, EmailTemplate
from app.automations.scheduler import CANCELLED, DONE, FAILED, DelayScheduler
from app.automations.schemas import (
    AutomationCreate,
    AutomationFlowUpdate,
    AutomationRead,
    AutomationStepRead,
    AutomationTemplate,
    AutomationUpdate,
    AutomationValidationRead,
    EmailTemplateCreate,
    EmailTemplateRead,
    EmailTemplateUpdate,
)
from app.context import get_correlation_id
from app.core.config import get_settings
from app.leads.service import ActorUser, require_workspace_member


logger = logging.getLogger("app.automations.service")


def _flow_node(node_id: str, node_type: str, label: str, x: int, y: int, config: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": node_type,
        "position": {"x": x, "y": y},
        "data": {"label": label, "nodeType": node_type, "config": config},
    }


def _flow_edge(source: str, target: str) -> dict[str, Any]:
    return {"id": f"e-{source}-{target}", "source": source, "target": target}


def template_flow(template: AutomationTemplate, form_id: str | None = None) -> dict[str, Any]:
    trigger_config = {"formId": form_id} if form_id else {}
    trigger = _flow_node("trigger-1", "trigger", "Form submitted", 250, 50, trigger_config)
    if template == "simple-email":
        email = _flow_node("email-1", "action_email", "Send email", 250, 200, {})
        return {"nodes": [trigger, email], "edges": [_flow_edge("trigger-1", "email-1")]}
    if template == "tag-qualify":
        tag = _flow_node("tag-1", "action_tag", "Tag as new lead", 250, 200, {"tags": ["New Lead"]})
        qualify = _flow_node("status-1", "action_status", "Mark qualified", 250, 350, {"status": "Qualified"})
        return {
            "nodes": [trigger, tag, qualify],
            "edges": [_flow_edge("trigger-1", "tag-1"), _flow_edge("tag-1", "status-1")],
        }
    if template == "webhook-integration":
        webhook = _flow_node("webhook-1", "action_webhook", "Send webhook", 250, 200, {})
        return {"nodes": [trigger, webhook], "edges": [_flow_edge("trigger-1", "webhook-1")]}
    return {"nodes": [trigger], "edges": []}


class AutomationService:
    def list_automations(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[AutomationRead]:
        require_workspace_member(session, actor_user, workspace_id)
        rows = session.scalars(
            select(Automation)
            .where(Automation.workspace_id == workspace_id)
            .order_by(Automation.created_at.desc(), Automation.id.desc())
        ).all()
        return [AutomationRead.model_validate(row) for row in rows]

    def create_automation(
        self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, dto: AutomationCreate
    ) -> AutomationRead:
        require_workspace_member(session, actor_user, workspace_id)
        automation = Automation(
            workspace_id=workspace_id,
            name=dto.name.strip(),
            trigger_type=FORM_SUBMISSION_TRIGGER,
            trigger_config={"formId": dto.form_id} if dto.form_id else {},
            is_active=False,
            flow_data=template_flow(dto.template, dto.form_id),
            created_by=actor_user.user_id,
        )
        session.add(automation)
        session.commit()
        session.refresh(automation)
        logger.info(
            "automation.created",
            extra={"automation_id": str(automation.id), "workspace_id": str(workspace_id)},
        )
        return AutomationRead.model_validate(automation)

    def get_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationRead:
        return AutomationRead.model_validate(self._load_for_actor(session, actor_user, automation_id))

    def update_automation(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: AutomationUpdate
    ) -> AutomationRead:
        automation = self._load_for_actor(session, actor_user, automation_id)
        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is not None:
            automation.name = changes["name"].strip()
        if "is_active" in changes and changes["is_active"] is not None:
            automation.is_active = changes["is_active"]
        if "trigger_config" in changes and changes["trigger_config"] is not None:
            automation.trigger_config = dict(changes["trigger_config"])
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def save_flow(
        self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID, dto: AutomationFlowUpdate
    ) -> AutomationRead:
        automation = self._load_for_actor(session, actor_user, automation_id)
        automation.flow_data = copy.deepcopy(dto.flow_data)
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def delete_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> None:
        automation = self._load_for_actor(session, actor_user, automation_id)
        session.execute(delete(AutomationScheduledStep).where(AutomationScheduledStep.automation_id == automation.id))
        session.execute(delete(AutomationStepRecord).where(AutomationStepRecord.automation_id == automation.id))
        session.delete(automation)
        session.commit()

    def validate(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationValidationRead:
        automation = self._load_for_actor(session, actor_user, automation_id)
        issues = validate_flow(automation.flow_data)
        return AutomationValidationRead(valid=not issues, errors=issues)

    def list_steps(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> list[AutomationStepRead]:
        automation = self._load_for_actor(session, actor_user, automation_id)
        rows = session.scalars(
            select(AutomationStepRecord)
            .where(AutomationStepRecord.automation_id == automation.id)
            .order_by(AutomationStepRecord.created_at.desc(), AutomationStepRecord.id.desc())
        ).all()
        return [AutomationStepRead.model_validate(row) for row in rows]

    def _load_for_actor(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> Automation:
        automation = session.get(Automation, automation_id)
        if automation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation not found")
        require_workspace_member(session, actor_user, automation.workspace_id)
        return automation


class EmailTemplateService:
    def list_templates(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[EmailTemplateRead]:
        require_workspace_member(session, actor_user, workspace_id)
        rows = session.scalars(
            select(EmailTemplate).where(EmailTemplate.workspace_id == workspace_id).order_by(EmailTemplate.name.asc())
        ).all()
        return [EmailTemplateRead.model_validate(row) for row in rows]

    def create_template(
        self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, dto: EmailTemplateCreate
    ) -> EmailTemplateRead:
        require_workspace_member(session, actor_user, workspace_id)
        template = EmailTemplate(workspace_id=workspace_id, **dto.model_dump())
        session.add(template)
        session.commit()
        session.refresh(template)
        return EmailTemplateRead.model_validate(template)

    def get_template(
        self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, template_id: uuid.UUID
    ) -> EmailTemplateRead:
        return EmailTemplateRead.model_validate(self._load(session, actor_user, workspace_id, template_id))

    def update_template(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        template_id: uuid.UUID,
        dto: EmailTemplateUpdate,
    ) -> EmailTemplateRead:
        template = self._load(session, actor_user, workspace_id, template_id)
        for key, value in dto.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(template, key, value)
        session.commit()
        session.refresh(template)
        return EmailTemplateRead.model_validate(template)

    def delete_template(
        self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, template_id: uuid.UUID
    ) -> None:
        template = self._load(session, actor_user, workspace_id, template_id)
        session.delete(template)
        session.commit()

    def _load(
        self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, template_id: uuid.UUID
    ) -> EmailTemplate:
        require_workspace_member(session, actor_user, workspace_id)
        template = session.scalar(
            select(EmailTemplate).where(and_(EmailTemplate.id == template_id, EmailTemplate.workspace_id == workspace_id))
        )
        if template is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="email template not found")
        return template


def trigger_from_envelope(envelope: dict[str, Any]) -> TriggerContext | None:
    payload = envelope.get("payload")
    if not isinstance(payload, dict) or not payload.get("lead_id") or not payload.get("workspace_id"):
        return None
    trigger_key = payload.get("submission_id") or envelope.get("event_id")
    if not trigger_key:
        return None
    data = payload.get("data")
    return TriggerContext(
        trigger_type=FORM_SUBMISSION_TRIGGER,
        workspace_id=uuid.UUID(str(payload["workspace_id"])),
        lead_id=uuid.UUID(str(payload["lead_id"])),
        trigger_key=str(trigger_key),
        project_id=payload.get("project_id"),
        submission_id=payload.get("submission_id"),
        data=dict(data) if isinstance(data, dict) else {},
    )


class AutomationDispatcher:
    """Fans a trigger out to every matching automation, one isolated run each."""

    def __init__(
        self,
        matcher: AutomationMatcher | None = None,
        executor: WorkflowExecutor | None = None,
        scheduler: DelayScheduler | None = None,
    ) -> None:
        self.matcher = matcher or AutomationMatcher()
        self.scheduler = scheduler or DelayScheduler()
        self.executor = executor or WorkflowExecutor(scheduler=self.scheduler)

    def dispatch_form_submission(self, session: Session, envelope: dict[str, Any]) -> list[RunReport]:
        trigger = trigger_from_envelope(envelope)
        if trigger is None:
            logger.warning("automation.dispatch.skipped", extra={"event_name": envelope.get("event_type")})
            return []
        return self.dispatch(session, trigger)

    def dispatch(self, session: Session, trigger: TriggerContext) -> list[RunReport]:
        automations = self.matcher.select(session, trigger)
        if get_settings().automation_dispatch_mode == "celery":
            from app.automations.tasks import run_automation_task

            for automation in automations:
                run_automation_task.delay(str(automation.id), trigger.to_payload(), get_correlation_id())
            logger.info(
                "automation.dispatch.enqueued",
                extra={"lead_id": str(trigger.lead_id), "workspace_id": str(trigger.workspace_id)},
            )
            return []

        return [self._run_isolated(session, automation, trigger) for automation in automations]

    def run_automation(
        self,
        session: Session,
        automation_id: uuid.UUID,
        trigger: TriggerContext,
        *,
        start_node_id: str | None = None,
    ) -> RunReport | None:
        automation = session.get(Automation, automation_id)
        if automation is None or not automation.is_active:
            logger.info("automation.run.skipped_inactive", extra={"automation_id": str(automation_id)})
            return None
        return self._run_isolated(session, automation, trigger, start_node_id=start_node_id)

    def resume_scheduled_step(self, session: Session, step_id: uuid.UUID) -> RunReport | None:
        step = self.scheduler.claim(session, step_id)
        if step is None:
            return None

        automation = session.get(Automation, step.automation_id)
        if automation is None or not automation.is_active:
            self.scheduler.finish(session, step, CANCELLED, "automation inactive or deleted")
            logger.info(
                "automation.delay.cancelled",
                extra={"scheduled_step_id": str(step.id), "automation_id": str(step.automation_id)},
            )
            return None

        trigger = TriggerContext.from_payload(step.trigger_payload)
        report = self._run_isolated(session, automation, trigger, start_node_id=step.resume_node_id)
        if report.failed and report.error is not None:
            self.scheduler.finish(session, step, FAILED, f"{report.error.code}: {report.error.message}")
        else:
            self.scheduler.finish(session, step, DONE)
        return report

    def run_due_steps(self, session: Session, now: datetime | None = None) -> list[RunReport]:
        reports: list[RunReport] = []
        for step_id in self.scheduler.due_step_ids(session, now):
            report = self.resume_scheduled_step(session, step_id)
            if report is not None:
                reports.append(report)
        return reports

    def _run_isolated(
        self,
        session: Session,
        automation: Automation,
        trigger: TriggerContext,
        *,
        start_node_id: str | None = None,
    ) -> RunReport:
        automation_id = automation.id
        try:
            return self.executor.run(session, automation, trigger, start_node_id=start_node_id)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "automation.run.crashed",
                extra={"automation_id": str(automation_id), "lead_id": str(trigger.lead_id)},
            )
            report = RunReport(automation_id=automation_id, lead_id=trigger.lead_id, trigger_key=trigger.trigger_key)
            report.error = RunError("unexpected_error", str(exc))
            report.transition(RunState.COMPLETED)
            return report


automation_dispatcher = AutomationDispatcher()
