"""Runs one automation flow for one lead.

A run walks the graph from the trigger (or from a resume node after a
delay), one node at a time. Every action step claims an
``AutomationStepRecord`` before it executes so that re-delivery of the same
trigger never repeats a side effect. Failures stop the run at the failing
node and are recorded on the lead's event history; they never propagate to
the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.automations.actions import ActionError, ActionHandler, RunContext, default_action_handlers
from app.automations.graph import AutomationGraph, GraphValidationError, load_graph
from app.automations.matcher import TriggerContext
from app.automations.models import Automation, AutomationStepRecord
from app.automations.scheduler import DelayScheduler
from app.automations.schemas import ConditionConfig, ConditionNode, DelayNode, TriggerNode
from app.context import reset_automation_run, set_automation_run
from app.leads.models import Lead
from app.leads.repository import LeadRepository
from app.metrics import observe_automation_action, observe_automation_run
from app.otel import annotate_span


logger = logging.getLogger("app.automations.executor")
tracer = trace.get_tracer("app.automations.executor")

STEP_SUCCEEDED = "Succeeded"
STEP_FAILED = "Failed"
STEP_RUNNING = "Running"
STEP_SCHEDULED = "Scheduled"


class RunState(str, Enum):
    READY = "Ready"
    RUNNING = "Running"
    BRANCHED = "Branched"
    ACTION_FAILED = "ActionFailed"
    PAUSED = "Paused"
    COMPLETED = "Completed"


@dataclass(frozen=True)
class StepOutcome:
    node_id: str
    node_type: str
    status: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunError:
    code: str
    message: str
    node_id: str | None = None


@dataclass
class RunReport:
    automation_id: uuid.UUID
    lead_id: uuid.UUID
    trigger_key: str
    history: list[RunState] = field(default_factory=lambda: [RunState.READY])
    steps: list[StepOutcome] = field(default_factory=list)
    error: RunError | None = None

    @property
    def state(self) -> RunState:
        return self.history[-1]

    @property
    def failed(self) -> bool:
        return self.error is not None

    def transition(self, state: RunState) -> None:
        self.history.append(state)

    def summary(self) -> dict[str, Any]:
        return {
            "automation_id": str(self.automation_id),
            "lead_id": str(self.lead_id),
            "trigger_key": self.trigger_key,
            "state": self.state.value,
            "steps": [
                {"node_id": step.node_id, "node_type": step.node_type, "status": step.status} for step in self.steps
            ],
            "error": None if self.error is None else {"code": self.error.code, "message": self.error.message, "node_id": self.error.node_id},
        }


ClaimResult = Literal["claimed", "done", "blocked"]


def _condition_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_condition_text(item) for item in value)
    return str(value)


def lookup_condition_value(trigger: TriggerContext, field_name: str) -> Any:
    if field_name in trigger.data:
        return trigger.data[field_name]
    return trigger.to_payload().get(field_name)


def evaluate_condition(config: ConditionConfig, trigger: TriggerContext) -> bool:
    actual = lookup_condition_value(trigger, config.field)
    if actual is None:
        return False
    text = _condition_text(actual)
    if config.operator == "equals":
        return text == config.value
    if config.operator == "not_equals":
        return text != config.value
    if config.operator == "contains":
        return config.value in text
    return False


class WorkflowExecutor:
    def __init__(
        self,
        handlers: dict[str, ActionHandler] | None = None,
        scheduler: DelayScheduler | None = None,
        repository: LeadRepository | None = None,
    ) -> None:
        self.handlers = handlers if handlers is not None else default_action_handlers()
        self.scheduler = scheduler or DelayScheduler()
        self.repository = repository or LeadRepository()

    def run(
        self,
        session: Session,
        automation: Automation,
        trigger: TriggerContext,
        *,
        start_node_id: str | None = None,
    ) -> RunReport:
        report = RunReport(automation_id=automation.id, lead_id=trigger.lead_id, trigger_key=trigger.trigger_key)
        token = set_automation_run(f"{automation.id}:{trigger.lead_id}:{trigger.trigger_key}")
        started = time.perf_counter()
        try:
            with tracer.start_as_current_span("automation.run") as span:
                annotate_span(
                    span,
                    automation__id=automation.id,
                    lead__id=trigger.lead_id,
                    automation__resumed=start_node_id is not None,
                )
                self._run(session, automation, trigger, report, start_node_id)
                annotate_span(
                    span,
                    automation__state=report.state.value,
                    automation__error=report.error.code if report.error else None,
                )

            observe_automation_run(report.state.value, time.perf_counter() - started)
            logger.info(
                "automation.run.completed",
                extra={
                    "automation_id": str(automation.id),
                    "lead_id": str(trigger.lead_id),
                    "run_state": report.state.value,
                    "outcome": "failed" if report.failed else "ok",
                    "error": report.error.code if report.error else None,
                },
            )
            return report
        finally:
            reset_automation_run(token)

    def _run(
        self,
        session: Session,
        automation: Automation,
        trigger: TriggerContext,
        report: RunReport,
        start_node_id: str | None,
    ) -> None:
        lead = session.get(Lead, trigger.lead_id)
        if lead is None:
            report.error = RunError("lead_missing", "lead no longer exists")
            report.transition(RunState.COMPLETED)
            return

        try:
            graph = load_graph(automation.flow_data)
        except GraphValidationError as exc:
            self._record_configuration_error(session, automation, lead, report, exc.code, exc.message, exc.node_id)
            return

        report.transition(RunState.RUNNING)
        if start_node_id is None:
            edge = graph.next_edge(graph.trigger_id)
            current = edge.target if edge is not None else None
        elif start_node_id not in graph.nodes:
            self._record_configuration_error(
                session,
                automation,
                lead,
                report,
                "resume_node_missing",
                f"resume node {start_node_id} is no longer part of the flow",
                start_node_id,
            )
            return
        else:
            current = start_node_id

        run = RunContext(automation=automation, lead=lead, trigger=trigger)
        visited: set[str] = set()
        while current is not None:
            if current in visited:
                self._record_configuration_error(
                    session, automation, lead, report, "cycle_detected", f"node {current} was visited twice", current
                )
                return
            visited.add(current)
            node = graph.nodes[current]

            if isinstance(node, TriggerNode):
                self._record_configuration_error(
                    session, automation, lead, report, "trigger_reentered", "run reached the trigger node again", node.id
                )
                return

            if isinstance(node, ConditionNode):
                current = self._branch(session, run, graph, node, report)
                continue

            if isinstance(node, DelayNode):
                if not self._pause(session, run, graph, node, report):
                    current = None
                    continue
                return

            if not self._execute_action(session, run, node, report):
                return
            edge = graph.next_edge(node.id)
            current = edge.target if edge is not None else None

        report.transition(RunState.COMPLETED)

    def _branch(
        self,
        session: Session,
        run: RunContext,
        graph: AutomationGraph,
        node: ConditionNode,
        report: RunReport,
    ) -> str | None:
        result = evaluate_condition(node.config, run.trigger)
        handle = "true" if result else "false"
        edge = graph.next_edge(node.id, handle)
        detail = {
            "node_type": node.type,
            "field": node.config.field,
            "operator": node.config.operator,
            "value": node.config.value,
            "result": result,
            "branch": handle,
            "next_node_id": edge.target if edge is not None else None,
        }
        self.repository.append_event(session, run.lead.id, "automation_step", {**detail, **run.provenance(node.id)})
        session.commit()
        report.transition(RunState.BRANCHED)
        report.steps.append(StepOutcome(node.id, node.type, handle, detail))
        return edge.target if edge is not None else None

    def _pause(
        self,
        session: Session,
        run: RunContext,
        graph: AutomationGraph,
        node: DelayNode,
        report: RunReport,
    ) -> bool:
        edge = graph.next_edge(node.id)
        if edge is None:
            report.steps.append(StepOutcome(node.id, node.type, "skipped", {"reason": "no_successor"}))
            return False

        claim, record = self._claim_step(session, run, node.id, node.type)
        if claim != "claimed":
            # the continuation already belongs to an earlier delivery
            report.steps.append(StepOutcome(node.id, node.type, "skipped", {"reason": "already_scheduled"}))
            report.transition(RunState.PAUSED)
            return True

        step = self.scheduler.schedule(session, run.automation, run.lead, run.trigger, node, edge)
        record.status = STEP_SCHEDULED
        record.detail = {"scheduled_step_id": str(step.id), "run_at": step.run_at.isoformat()}
        self.repository.append_event(
            session,
            run.lead.id,
            "automation_delayed",
            {
                "scheduled_step_id": str(step.id),
                "run_at": step.run_at.isoformat(),
                "duration": node.config.duration,
                "unit": node.config.unit,
                "resume_node_id": edge.target,
                **run.provenance(node.id),
            },
        )
        session.commit()
        self.scheduler.enqueue(step)
        report.steps.append(StepOutcome(node.id, node.type, STEP_SCHEDULED, dict(record.detail)))
        report.transition(RunState.PAUSED)
        return True

    def _execute_action(self, session: Session, run: RunContext, node: Any, report: RunReport) -> bool:
        claim, record = self._claim_step(session, run, node.id, node.type)
        if claim == "done":
            report.steps.append(StepOutcome(node.id, node.type, "skipped", {"reason": "already_succeeded"}))
            return True
        if claim == "blocked":
            logger.warning(
                "automation.step.not_retried",
                extra={"automation_id": str(run.automation.id), "node_id": node.id, "status": record.status},
            )
            report.error = RunError("step_not_retryable", f"step {node.id} was already attempted", node.id)
            report.steps.append(StepOutcome(node.id, node.type, "skipped", {"reason": "already_attempted"}))
            report.transition(RunState.COMPLETED)
            return False

        handler = self.handlers.get(node.type)
        try:
            if handler is None:
                raise ActionError("unsupported_node", f"no handler for node type {node.type}")
            detail = handler.execute(session, run, node)
            record.status = STEP_SUCCEEDED
            record.detail = detail
            session.commit()
        except ActionError as exc:
            self._record_action_failure(session, run, node, record, report, exc.code, exc.message)
            return False
        except Exception as exc:
            logger.exception(
                "automation.step.crashed",
                extra={"automation_id": str(run.automation.id), "node_id": node.id, "node_type": node.type},
            )
            self._record_action_failure(session, run, node, record, report, "unexpected_error", str(exc))
            return False

        observe_automation_action(node.type, STEP_SUCCEEDED)
        report.steps.append(StepOutcome(node.id, node.type, STEP_SUCCEEDED, detail))
        return True

    def _claim_step(
        self, session: Session, run: RunContext, node_id: str, node_type: str
    ) -> tuple[ClaimResult, AutomationStepRecord]:
        existing = self._find_step(session, run, node_id)
        if existing is not None:
            return ("done" if existing.status == STEP_SUCCEEDED else "blocked"), existing

        record = AutomationStepRecord(
            automation_id=run.automation.id,
            lead_id=run.lead.id,
            node_id=node_id,
            node_type=node_type,
            trigger_key=run.trigger.trigger_key,
            status=STEP_RUNNING,
            detail={},
        )
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = self._find_step(session, run, node_id)
            if winner is None:
                raise
            return ("done" if winner.status == STEP_SUCCEEDED else "blocked"), winner
        return "claimed", record

    def _find_step(self, session: Session, run: RunContext, node_id: str) -> AutomationStepRecord | None:
        return session.scalar(
            select(AutomationStepRecord).where(
                and_(
                    AutomationStepRecord.automation_id == run.automation.id,
                    AutomationStepRecord.lead_id == run.lead.id,
                    AutomationStepRecord.node_id == node_id,
                    AutomationStepRecord.trigger_key == run.trigger.trigger_key,
                )
            )
        )

    def _record_action_failure(
        self,
        session: Session,
        run: RunContext,
        node: Any,
        record: AutomationStepRecord,
        report: RunReport,
        code: str,
        message: str,
    ) -> None:
        session.rollback()
        record.status = STEP_FAILED
        record.detail = {"code": code, "message": message}
        self.repository.append_event(
            session,
            run.lead.id,
            "automation_failed",
            {"node_type": node.type, "reason": code, "message": message, **run.provenance(node.id)},
        )
        session.commit()
        observe_automation_action(node.type, STEP_FAILED)
        logger.warning(
            "automation.step.failed",
            extra={
                "automation_id": str(run.automation.id),
                "lead_id": str(run.lead.id),
                "node_id": node.id,
                "node_type": node.type,
                "error": code,
            },
        )
        report.error = RunError(code, message, node.id)
        report.steps.append(StepOutcome(node.id, node.type, STEP_FAILED, dict(record.detail)))
        report.transition(RunState.ACTION_FAILED)
        report.transition(RunState.COMPLETED)

    def _record_configuration_error(
        self,
        session: Session,
        automation: Automation,
        lead: Lead,
        report: RunReport,
        code: str,
        message: str,
        node_id: str | None,
    ) -> None:
        self.repository.append_event(
            session,
            lead.id,
            "automation_failed",
            {"automation_id": str(automation.id), "node_id": node_id, "reason": code, "message": message},
        )
        session.commit()
        logger.warning(
            "automation.run.misconfigured",
            extra={"automation_id": str(automation.id), "lead_id": str(lead.id), "node_id": node_id, "error": code},
        )
        report.error = RunError(code, message, node_id)
        report.transition(RunState.COMPLETED)
