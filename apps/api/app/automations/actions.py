from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.automations import delivery
from app.automations.delivery import DeliveryError, EmailDeliveryClient, EmailMessage, WebhookClient
from app.automations.matcher import TriggerContext
from app.automations.models import Automation, EmailTemplate
from app.automations.schemas import EmailNode, StatusNode, TagNode, WebhookNode
from app.automations.templating import render_merge_tags
from app.core.config import get_settings
from app.leads.models import Lead, Workspace, utcnow
from app.leads.repository import LeadRepository


class ActionError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class RunContext:
    automation: Automation
    lead: Lead
    trigger: TriggerContext

    def provenance(self, node_id: str) -> dict[str, str]:
        return {"automation_id": str(self.automation.id), "node_id": node_id}


class ActionHandler(Protocol):
    def execute(self, session: Session, run: RunContext, node: Any) -> dict[str, Any]: ...


class TagActionHandler:
    def __init__(self, repository: LeadRepository | None = None) -> None:
        self.repository = repository or LeadRepository()

    def execute(self, session: Session, run: RunContext, node: TagNode) -> dict[str, Any]:
        added = self.repository.add_tags(session, run.lead, node.config.tags)
        self.repository.append_event(
            session,
            run.lead.id,
            "tags_added",
            {"added_tags": added, "requested_tags": node.config.tags, **run.provenance(node.id)},
        )
        return {"added_tags": added}


class StatusActionHandler:
    def __init__(self, repository: LeadRepository | None = None) -> None:
        self.repository = repository or LeadRepository()

    def execute(self, session: Session, run: RunContext, node: StatusNode) -> dict[str, Any]:
        new_status = node.config.status
        old_status = self.repository.set_status(session, run.lead, new_status)
        self.repository.append_event(
            session,
            run.lead.id,
            "status_changed",
            {
                "old_status": old_status if old_status is not None else new_status,
                "new_status": new_status,
                "changed_by": "automation",
                **run.provenance(node.id),
            },
        )
        return {"old_status": old_status, "new_status": new_status}


class WebhookActionHandler:
    def __init__(self, client: WebhookClient | None = None, repository: LeadRepository | None = None) -> None:
        self.client = client
        self.repository = repository or LeadRepository()

    def execute(self, session: Session, run: RunContext, node: WebhookNode) -> dict[str, Any]:
        client = self.client or delivery.get_webhook_client()
        payload = {
            "leadId": str(run.lead.id),
            "automationId": str(run.automation.id),
            "projectId": run.trigger.project_id,
            "triggerData": run.trigger.to_payload(),
            "timestamp": utcnow().isoformat(),
        }
        try:
            status_code = client.post(node.config.url, payload)
        except DeliveryError as exc:
            raise ActionError(exc.code, exc.message) from exc

        detail = {"node_type": node.type, "url": node.config.url, "status_code": status_code}
        self.repository.append_event(session, run.lead.id, "automation_step", {**detail, **run.provenance(node.id)})
        return detail


class EmailActionHandler:
    def __init__(self, client: EmailDeliveryClient | None = None, repository: LeadRepository | None = None) -> None:
        self.client = client
        self.repository = repository or LeadRepository()

    def execute(self, session: Session, run: RunContext, node: EmailNode) -> dict[str, Any]:
        template = session.scalar(
            select(EmailTemplate).where(
                and_(
                    EmailTemplate.id == node.config.template_id,
                    EmailTemplate.workspace_id == run.automation.workspace_id,
                )
            )
        )
        if template is None:
            raise ActionError("email_template_missing", "email template not found")
        if not template.is_active:
            raise ActionError("email_template_inactive", "email template is inactive")
        if not run.lead.email:
            raise ActionError("lead_without_email", "lead has no email address")

        workspace = session.get(Workspace, run.automation.workspace_id)
        message = build_email_message(template, run.lead, workspace)
        try:
            client = self.client or delivery.get_email_client()
            message_id = client.send(message)
        except DeliveryError as exc:
            raise ActionError(exc.code, exc.message) from exc

        detail = {
            "node_type": node.type,
            "template_id": str(template.id),
            "to": run.lead.email,
            "subject": message.subject,
            "message_id": message_id,
        }
        self.repository.append_event(session, run.lead.id, "automation_step", {**detail, **run.provenance(node.id)})
        return detail


def merge_context(lead: Lead, workspace: Workspace | None) -> dict[str, Any]:
    lead_values: dict[str, Any] = {
        "id": str(lead.id),
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "job_title": lead.job_title,
        "status": lead.status,
        "score": lead.score,
    }
    for key, value in (lead.custom_fields or {}).items():
        lead_values.setdefault(str(key), value)

    context: dict[str, Any] = {"lead": lead_values, "current_date": date.today().isoformat()}
    if workspace is not None:
        context["workspace"] = {
            "name": workspace.name,
            "sender_name": workspace.sender_name,
            "sender_email": workspace.sender_email,
        }
        context["user"] = {"name": workspace.owner_name, "email": workspace.owner_email}
    return context


def build_email_message(template: EmailTemplate, lead: Lead, workspace: Workspace | None) -> EmailMessage:
    settings = get_settings()
    context = merge_context(lead, workspace)
    from_name = (workspace.sender_name or workspace.name) if workspace is not None else None
    return EmailMessage(
        from_address=f"{from_name or settings.email_default_sender_name} <{settings.email_from_address}>",
        to=[lead.email],
        subject=render_merge_tags(template.subject, context),
        html=render_merge_tags(template.body_html, context, escape=True),
        reply_to=workspace.sender_email if workspace is not None else None,
    )


def default_action_handlers() -> dict[str, ActionHandler]:
    return {
        "action_tag": TagActionHandler(),
        "action_status": StatusActionHandler(),
        "action_webhook": WebhookActionHandler(),
        "action_email": EmailActionHandler(),
    }
