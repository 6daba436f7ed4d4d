from __future__ import annotations

import logging
import uuid
from typing import Any

from app.automations.matcher import TriggerContext
from app.automations.service import automation_dispatcher
from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.database import SessionLocal


logger = logging.getLogger("app.automations.tasks")


@celery_app.task(name="app.automations.run_automation")
def run_automation_task(automation_id: str, trigger_payload: dict[str, Any], correlation_id: str | None = None) -> str:
    token = set_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        report = automation_dispatcher.run_automation(
            session,
            uuid.UUID(automation_id),
            TriggerContext.from_payload(trigger_payload),
        )
        return "skipped" if report is None else report.state.value
    finally:
        session.close()
        reset_correlation_id(token)


@celery_app.task(name="app.automations.resume_delayed_step")
def resume_delayed_step_task(scheduled_step_id: str) -> str:
    session = SessionLocal()
    try:
        report = automation_dispatcher.resume_scheduled_step(session, uuid.UUID(scheduled_step_id))
        return "skipped" if report is None else report.state.value
    finally:
        session.close()


@celery_app.task(name="app.automations.sweep_due_steps")
def sweep_due_steps_task() -> int:
    session = SessionLocal()
    try:
        reports = automation_dispatcher.run_due_steps(session)
    finally:
        session.close()
    if reports:
        logger.info("automation.delay.sweep", extra={"outcome": f"resumed:{len(reports)}"})
    return len(reports)
