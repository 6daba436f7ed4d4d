from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.automations.models import Automation


FORM_SUBMISSION_TRIGGER = "form_submission"


@dataclass(frozen=True)
class TriggerContext:
    """Everything a run needs to start or resume without in-process state."""

    trigger_type: str
    workspace_id: uuid.UUID
    lead_id: uuid.UUID
    trigger_key: str
    project_id: str | None = None
    submission_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "trigger_type": self.trigger_type,
            "workspace_id": str(self.workspace_id),
            "lead_id": str(self.lead_id),
            "trigger_key": self.trigger_key,
            "project_id": self.project_id,
            "submission_id": self.submission_id,
            "data": dict(self.data),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TriggerContext:
        data = payload.get("data")
        return cls(
            trigger_type=str(payload.get("trigger_type") or FORM_SUBMISSION_TRIGGER),
            workspace_id=uuid.UUID(str(payload["workspace_id"])),
            lead_id=uuid.UUID(str(payload["lead_id"])),
            trigger_key=str(payload["trigger_key"]),
            project_id=payload.get("project_id"),
            submission_id=payload.get("submission_id"),
            data=dict(data) if isinstance(data, dict) else {},
        )


class AutomationMatcher:
    def select(self, session: Session, trigger: TriggerContext) -> list[Automation]:
        candidates = session.scalars(
            select(Automation)
            .where(
                and_(
                    Automation.workspace_id == trigger.workspace_id,
                    Automation.trigger_type == trigger.trigger_type,
                    Automation.is_active.is_(True),
                )
            )
            .order_by(Automation.created_at.asc(), Automation.id.asc())
        ).all()
        return [automation for automation in candidates if self.matches(automation, trigger)]

    def matches(self, automation: Automation, trigger: TriggerContext) -> bool:
        config = automation.trigger_config or {}
        bound_form_id = config.get("formId")
        if bound_form_id and str(bound_form_id) != str(trigger.project_id):
            return False
        return True
