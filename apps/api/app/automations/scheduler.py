from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.automations.matcher import TriggerContext
from app.automations.models import Automation, AutomationScheduledStep
from app.automations.schemas import DelayConfig, DelayNode, FlowEdge
from app.core.config import get_settings
from app.leads.models import Lead, utcnow
from app.metrics import observe_delayed_step


logger = logging.getLogger("app.automations.scheduler")

PENDING = "Pending"
RUNNING = "Running"
DONE = "Done"
FAILED = "Failed"
CANCELLED = "Cancelled"


def delay_interval(config: DelayConfig) -> timedelta:
    return timedelta(**{config.unit: config.duration})


class DelayScheduler:
    """Persists delay continuations so that a restart never loses one."""

    def schedule(
        self,
        session: Session,
        automation: Automation,
        lead: Lead,
        trigger: TriggerContext,
        node: DelayNode,
        edge: FlowEdge,
        *,
        now: datetime | None = None,
    ) -> AutomationScheduledStep:
        step = AutomationScheduledStep(
            id=uuid.uuid4(),
            automation_id=automation.id,
            lead_id=lead.id,
            workspace_id=automation.workspace_id,
            trigger_key=trigger.trigger_key,
            delay_node_id=node.id,
            resume_edge_id=edge.id,
            resume_node_id=edge.target,
            trigger_payload=trigger.to_payload(),
            run_at=(now or utcnow()) + delay_interval(node.config),
            status=PENDING,
        )
        session.add(step)
        session.flush()
        observe_delayed_step("scheduled")
        logger.info(
            "automation.delay.scheduled",
            extra={
                "automation_id": str(automation.id),
                "lead_id": str(lead.id),
                "node_id": node.id,
                "scheduled_step_id": str(step.id),
            },
        )
        return step

    def enqueue(self, step: AutomationScheduledStep) -> None:
        if get_settings().automation_dispatch_mode != "celery":
            return
        from app.automations.tasks import resume_delayed_step_task

        resume_delayed_step_task.apply_async(args=[str(step.id)], eta=step.run_at)

    def due_step_ids(self, session: Session, now: datetime | None = None, limit: int = 100) -> list[uuid.UUID]:
        return list(
            session.scalars(
                select(AutomationScheduledStep.id)
                .where(
                    and_(
                        AutomationScheduledStep.status == PENDING,
                        AutomationScheduledStep.run_at <= (now or utcnow()),
                    )
                )
                .order_by(AutomationScheduledStep.run_at.asc())
                .limit(limit)
            ).all()
        )

    def claim(self, session: Session, step_id: uuid.UUID) -> AutomationScheduledStep | None:
        """Move a pending step to running; ``None`` when another worker got there first."""
        result = session.execute(
            update(AutomationScheduledStep)
            .where(and_(AutomationScheduledStep.id == step_id, AutomationScheduledStep.status == PENDING))
            .values(status=RUNNING, started_at=utcnow())
        )
        session.commit()
        if result.rowcount != 1:
            return None
        observe_delayed_step("claimed")
        return session.get(AutomationScheduledStep, step_id)

    def finish(
        self,
        session: Session,
        step: AutomationScheduledStep,
        status: str,
        error: str | None = None,
    ) -> None:
        step.status = status
        step.last_error = error
        step.finished_at = utcnow()
        session.commit()
        observe_delayed_step(status.lower())
