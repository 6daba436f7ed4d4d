from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.leads.extraction import CanonicalFields, partition_custom_fields
from app.leads.models import Lead, LeadEvent, utcnow
from app.leads.scoring import ScoreResult, initial_status, score_lead


logger = logging.getLogger("app.leads.repository")

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "landing_page_url", "referrer")

LeadOutcome = Literal["created", "existing", "skipped_no_identity"]


@dataclass(frozen=True)
class SourceMeta:
    source_type: str
    source_id: str | None = None
    utm: Mapping[str, Any] = field(default_factory=dict)
    page_url: str | None = None
    extra_tags: tuple[str, ...] = ()
    status: str | None = None


@dataclass
class FindOrCreateResult:
    outcome: LeadOutcome
    lead: Lead | None = None
    score: ScoreResult | None = None


def normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    normalized = email.strip().lower()
    return normalized or None


def merge_tags(current: Iterable[str], additions: Iterable[str]) -> list[str]:
    merged = list(dict.fromkeys(tag for tag in current if tag))
    for tag in additions:
        cleaned = tag.strip() if isinstance(tag, str) else ""
        if cleaned and cleaned not in merged:
            merged.append(cleaned)
    return merged


class LeadRepository:
    """Deduplicates leads on (workspace, email) and appends their audit events.

    The store-level unique constraint is the authority for deduplication; a
    uniqueness violation on insert is resolved by re-reading the winner.
    """

    def get_by_email(self, session: Session, workspace_id: uuid.UUID, email: str) -> Lead | None:
        return session.scalar(select(Lead).where(and_(Lead.workspace_id == workspace_id, Lead.email == email)))

    def append_event(self, session: Session, lead_id: uuid.UUID, event_type: str, payload: dict[str, Any]) -> LeadEvent:
        event = LeadEvent(lead_id=lead_id, type=event_type, payload=payload, created_at=utcnow())
        session.add(event)
        return event

    def find_or_create(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        fields: CanonicalFields,
        raw_submission: Mapping[str, Any],
        source: SourceMeta,
        *,
        phone: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
    ) -> FindOrCreateResult:
        email = normalize_email(fields.email)
        if email is None:
            return FindOrCreateResult(outcome="skipped_no_identity")

        existing = self.get_by_email(session, workspace_id, email)
        if existing is not None:
            return FindOrCreateResult(outcome="existing", lead=existing)

        result = score_lead(email, fields.company, fields.job_title, raw_submission)
        utm = source.utm or {}
        lead = Lead(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            email=email,
            name=fields.name,
            phone=phone,
            company=fields.company,
            job_title=fields.job_title,
            score=result.score,
            score_reason=result.reason,
            status=source.status or initial_status(result.score),
            tags=merge_tags(result.tags, source.extra_tags),
            custom_fields=dict(custom_fields) if custom_fields is not None else partition_custom_fields(raw_submission),
            source_type=source.source_type,
            source_id=source.source_id,
            page_url=source.page_url,
            **{name: _utm_value(utm, name) for name in UTM_FIELDS},
        )
        session.add(lead)
        self.append_event(
            session,
            lead.id,
            "created",
            {"source_type": source.source_type, "source_id": source.source_id},
        )
        self.append_event(
            session,
            lead.id,
            "score_calculated",
            {"score": result.score, "reason": result.reason, "tags": list(result.tags)},
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            winner = self.get_by_email(session, workspace_id, email)
            if winner is None:
                raise
            logger.info(
                "lead.dedupe_race_resolved",
                extra={"lead_id": str(winner.id), "workspace_id": str(workspace_id)},
            )
            return FindOrCreateResult(outcome="existing", lead=winner)

        session.refresh(lead)
        return FindOrCreateResult(outcome="created", lead=lead, score=result)

    def add_tags(self, session: Session, lead: Lead, tags: Iterable[str]) -> list[str]:
        before = list(lead.tags or [])
        merged = merge_tags(before, tags)
        added = [tag for tag in merged if tag not in before]
        if added:
            lead.tags = merged
        return added

    def remove_tag(self, session: Session, lead: Lead, tag: str) -> bool:
        before = list(lead.tags or [])
        if tag not in before:
            return False
        lead.tags = [item for item in before if item != tag]
        return True

    def set_status(self, session: Session, lead: Lead, new_status: str) -> str | None:
        old_status = lead.status
        if old_status == new_status:
            return None
        lead.status = new_status
        return old_status


def _utm_value(utm: Mapping[str, Any], name: str) -> str | None:
    value = utm.get(name)
    if value is None or value == "":
        return None
    return str(value)
