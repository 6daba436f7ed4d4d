from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.leads.enrichment import EnrichmentError, LeadAnalyzer, get_lead_analyzer
from app.leads.extraction import CanonicalFields, extract_canonical_fields
from app.leads.models import FormProject, FormSubmission, Lead, LeadEvent, WorkspaceMember, utcnow
from app.leads.repository import LeadRepository, SourceMeta, normalize_email
from app.leads.schemas import (
    HotLead,
    LeadCaptureRequest,
    LeadCreate,
    LeadEventRead,
    LeadPage,
    LeadRead,
    LeadScoreUpdate,
    LeadStats,
    LeadUpdate,
)
from app.leads.scoring import HIGH_INTEREST_THRESHOLD, QUALIFIED_THRESHOLD
from app.metrics import observe_lead_ingested
from app.otel import annotate_span


logger = logging.getLogger("app.leads.intake")
tracer = trace.get_tracer("app.leads.intake")

FORM_SUBMITTED_EVENT = "leads.form_submitted"
MANUAL_TAG = "manual"


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    is_super_admin: bool = False
    correlation_id: str | None = None


def require_workspace_member(session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> None:
    if actor_user.is_super_admin:
        return
    membership = session.scalar(
        select(WorkspaceMember.id).where(
            and_(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == actor_user.user_id)
        )
    )
    if membership is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="workspace access denied")


class LeadService:
    def __init__(self, repository: LeadRepository | None = None) -> None:
        self.repository = repository or LeadRepository()

    def create_lead(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, dto: LeadCreate) -> LeadRead:
        require_workspace_member(session, actor_user, workspace_id)
        fields = CanonicalFields(email=dto.email, name=dto.name, company=dto.company, job_title=dto.job_title)
        result = self.repository.find_or_create(
            session,
            workspace_id,
            fields,
            {},
            SourceMeta(source_type="manual", extra_tags=(MANUAL_TAG,), status=dto.status),
            phone=dto.phone,
            custom_fields={},
        )
        if result.outcome == "existing" or result.lead is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead with this email already exists")

        lead = result.lead
        if dto.notes:
            lead.notes = dto.notes
            session.commit()
            session.refresh(lead)
        logger.info(
            "lead.created",
            extra={"lead_id": str(lead.id), "workspace_id": str(workspace_id), "outcome": "manual"},
        )
        return LeadRead.model_validate(lead)

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        *,
        page: int = 1,
        page_size: int = 10,
        search: str | None = None,
        status_filter: str | None = None,
    ) -> LeadPage:
        require_workspace_member(session, actor_user, workspace_id)
        conditions: list[Any] = [Lead.workspace_id == workspace_id]
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(Lead.name.ilike(pattern), Lead.email.ilike(pattern), Lead.company.ilike(pattern)))
        if status_filter:
            conditions.append(Lead.status == status_filter)

        total = session.scalar(select(func.count()).select_from(Lead).where(and_(*conditions))) or 0
        rows = session.scalars(
            select(Lead)
            .where(and_(*conditions))
            .order_by(Lead.created_at.desc(), Lead.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return LeadPage(
            items=[LeadRead.model_validate(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._load_lead_for_actor(session, actor_user, lead_id))

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        changes = dto.model_dump(exclude_unset=True)
        if "email" in changes:
            email = normalize_email(changes["email"])
            if email is None:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="email cannot be empty")
            changes["email"] = email
        for key, value in changes.items():
            setattr(lead, key, value)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="lead with this email already exists") from exc
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        session.execute(update(FormSubmission).where(FormSubmission.lead_id == lead.id).values(lead_id=None))
        session.execute(delete(LeadEvent).where(LeadEvent.lead_id == lead.id))
        session.delete(lead)
        session.commit()
        logger.info("lead.deleted", extra={"lead_id": str(lead_id), "workspace_id": str(lead.workspace_id)})

    def update_status(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, new_status: str) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        old_status = self.repository.set_status(session, lead, new_status)
        if old_status is not None:
            self.repository.append_event(
                session,
                lead.id,
                "status_changed",
                {"old_status": old_status, "new_status": new_status, "changed_by": actor_user.user_id},
            )
            session.commit()
            session.refresh(lead)
        return LeadRead.model_validate(lead)

    def add_tags(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, tags: list[str]) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        added = self.repository.add_tags(session, lead, tags)
        if added:
            self.repository.append_event(session, lead.id, "tags_added", {"added_tags": added})
            session.commit()
            session.refresh(lead)
        return LeadRead.model_validate(lead)

    def remove_tag(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, tag: str) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        if self.repository.remove_tag(session, lead, tag):
            self.repository.append_event(session, lead.id, "tag_removed", {"tag": tag})
            session.commit()
            session.refresh(lead)
        return LeadRead.model_validate(lead)

    def update_score(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadScoreUpdate) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        lead.score = dto.score
        lead.score_reason = dto.reason
        self.repository.append_event(
            session,
            lead.id,
            "score_manual_update",
            {"new_score": dto.score, "reason": dto.reason, "changed_by": actor_user.user_id},
        )
        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def list_events(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadEventRead]:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        rows = session.scalars(
            select(LeadEvent)
            .where(LeadEvent.lead_id == lead.id)
            .order_by(LeadEvent.created_at.desc(), LeadEvent.id.desc())
        ).all()
        return [LeadEventRead.model_validate(row) for row in rows]

    def get_stats(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> LeadStats:
        require_workspace_member(session, actor_user, workspace_id)
        in_workspace = Lead.workspace_id == workspace_id
        total, qualified = session.execute(
            select(
                func.count(Lead.id),
                func.coalesce(
                    func.sum(
                        case(
                            (or_(Lead.score >= QUALIFIED_THRESHOLD, Lead.status == "Qualified"), 1),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(in_workspace)
        ).one()
        by_status = {
            row_status: count
            for row_status, count in session.execute(
                select(Lead.status, func.count(Lead.id)).where(in_workspace).group_by(Lead.status)
            ).all()
        }
        hot_rows = session.scalars(
            select(Lead)
            .where(and_(in_workspace, Lead.score >= HIGH_INTEREST_THRESHOLD))
            .order_by(Lead.score.desc(), Lead.created_at.desc())
            .limit(5)
        ).all()
        return LeadStats(
            total=int(total or 0),
            qualified=int(qualified or 0),
            by_status=by_status,
            hot_leads=[HotLead.model_validate(row) for row in hot_rows],
        )

    def analyze_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        analyzer: LeadAnalyzer | None = None,
    ) -> LeadRead:
        lead = self._load_lead_for_actor(session, actor_user, lead_id)
        latest_submit = session.scalar(
            select(LeadEvent)
            .where(and_(LeadEvent.lead_id == lead.id, LeadEvent.type == "form_submit"))
            .order_by(LeadEvent.id.desc())
            .limit(1)
        )
        submission_data = (latest_submit.payload or {}).get("data") if latest_submit is not None else None
        if not isinstance(submission_data, dict):
            submission_data = dict(lead.custom_fields or {})

        try:
            active_analyzer = analyzer or get_lead_analyzer()
            analysis = active_analyzer.analyze(lead, submission_data)
        except EnrichmentError as exc:
            logger.warning("lead.analysis_failed", extra={"lead_id": str(lead.id), "error": str(exc)})
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="lead analysis failed") from exc

        payload = analysis.model_dump()
        lead.ai_analysis = {**payload, "analyzed_at": utcnow().isoformat()}
        self.repository.append_event(session, lead.id, "ai_analysis", payload)
        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def _load_lead(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.get(Lead, lead_id)
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="lead not found")
        return lead

    def _load_lead_for_actor(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> Lead:
        lead = self._load_lead(session, lead_id)
        require_workspace_member(session, actor_user, lead.workspace_id)
        return lead


@dataclass
class IngestionResult:
    outcome: str
    submission_id: uuid.UUID | None = None
    lead_id: uuid.UUID | None = None
    workspace_id: uuid.UUID | None = None


class SubmissionIntakeService:
    """Public, unauthenticated intake path.

    The caller hands in the session it owns; every lookup here crosses
    workspace boundaries, so it must never be reachable from user-scoped
    routes with a user-scoped session.
    """

    def __init__(self, repository: LeadRepository | None = None) -> None:
        self.repository = repository or LeadRepository()

    def record_submission(
        self,
        session: Session,
        project_id: uuid.UUID,
        data: dict[str, Any],
        utm: dict[str, Any] | None = None,
        submission_id: uuid.UUID | None = None,
    ) -> FormSubmission:
        project = session.get(FormProject, project_id)
        if project is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="form project not found")

        if submission_id is not None:
            existing = session.get(FormSubmission, submission_id)
            if existing is not None:
                if existing.project_id != project_id:
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="submission belongs to another project")
                return existing

        submission = FormSubmission(
            id=submission_id or uuid.uuid4(),
            project_id=project_id,
            data=dict(data),
            utm=dict(utm or {}),
        )
        session.add(submission)
        session.commit()
        session.refresh(submission)
        return submission

    def process_new_submission(
        self,
        session: Session,
        project_id: uuid.UUID,
        submission_data: dict[str, Any],
        submission_id: uuid.UUID | None = None,
        utm_data: dict[str, Any] | None = None,
    ) -> IngestionResult:
        started = time.perf_counter()
        with tracer.start_as_current_span("leads.intake") as span:
            result = self._process(session, project_id, submission_data, submission_id, utm_data)
            annotate_span(span, project_id=project_id, outcome=result.outcome, lead__id=result.lead_id)

        observe_lead_ingested(result.outcome)
        logger.info(
            "lead.intake.processed",
            extra={
                "project_id": str(project_id),
                "submission_id": str(result.submission_id) if result.submission_id else None,
                "lead_id": str(result.lead_id) if result.lead_id else None,
                "outcome": result.outcome,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    def capture_lead(
        self,
        session: Session,
        dto: LeadCaptureRequest,
        metadata: dict[str, Any],
    ) -> IngestionResult:
        extras = dict(dto.model_extra or {})
        fields = CanonicalFields(
            email=str(dto.email),
            name=dto.name,
            company=_optional_text(extras.pop("company", None)),
            job_title=_optional_text(extras.pop("job_title", None)),
        )
        result = self.repository.find_or_create(
            session,
            dto.workspace_id,
            fields,
            extras,
            SourceMeta(source_type=dto.source or "legacy_form", page_url=dto.page_url),
            phone=dto.phone,
            custom_fields={**extras, "metadata": metadata},
        )
        outcome = result.outcome
        observe_lead_ingested(f"capture_{outcome}")
        return IngestionResult(
            outcome=outcome,
            lead_id=result.lead.id if result.lead is not None else None,
            workspace_id=dto.workspace_id,
        )

    def _process(
        self,
        session: Session,
        project_id: uuid.UUID,
        submission_data: dict[str, Any],
        submission_id: uuid.UUID | None,
        utm_data: dict[str, Any] | None,
    ) -> IngestionResult:
        project = session.get(FormProject, project_id)
        if project is None:
            return IngestionResult(outcome="skipped_no_project", submission_id=submission_id)

        fields = extract_canonical_fields(submission_data, project.content or None)
        result = self.repository.find_or_create(
            session,
            project.workspace_id,
            fields,
            submission_data,
            SourceMeta(source_type="form", source_id=str(project.id), utm=utm_data or {}),
        )
        if result.lead is None:
            return IngestionResult(
                outcome=result.outcome,
                submission_id=submission_id,
                workspace_id=project.workspace_id,
            )

        lead = result.lead
        self.repository.append_event(
            session,
            lead.id,
            "form_submit",
            {
                "form_id": str(project.id),
                "submission_id": str(submission_id) if submission_id else None,
                "data": submission_data,
            },
        )
        if submission_id is not None:
            submission = session.get(FormSubmission, submission_id)
            if submission is not None:
                submission.lead_id = lead.id
        session.commit()

        if result.outcome == "created":
            logger.info(
                "lead.created",
                extra={"lead_id": str(lead.id), "workspace_id": str(project.workspace_id), "outcome": "form"},
            )

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": FORM_SUBMITTED_EVENT,
                "occurred_at": utcnow().isoformat(),
                "version": 1,
                "payload": {
                    "workspace_id": str(project.workspace_id),
                    "project_id": str(project.id),
                    "submission_id": str(submission_id) if submission_id else None,
                    "lead_id": str(lead.id),
                    "lead_outcome": result.outcome,
                    "data": submission_data,
                },
            }
        )
        return IngestionResult(
            outcome=result.outcome,
            submission_id=submission_id,
            lead_id=lead.id,
            workspace_id=project.workspace_id,
        )


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
