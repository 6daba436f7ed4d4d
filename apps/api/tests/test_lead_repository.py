from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.leads.extraction import CanonicalFields
from app.leads.models import Lead, LeadEvent, Workspace
from app.leads.repository import LeadRepository, SourceMeta, merge_tags


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def workspace_id(db_session: Session) -> uuid.UUID:
    workspace = Workspace(name="Acme Marketing")
    db_session.add(workspace)
    db_session.commit()
    return workspace.id


def _count_leads(session: Session, workspace_id: uuid.UUID) -> int:
    return session.scalar(select(func.count()).select_from(Lead).where(Lead.workspace_id == workspace_id)) or 0


def test_creates_scored_lead_with_audit_events(db_session: Session, workspace_id: uuid.UUID) -> None:
    repository = LeadRepository()
    submission = {"email": "CEO@BigCorp.com ", "company": "BigCorp", "job": "CEO", "budget": "R$50k", "country": "BR"}

    result = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="CEO@BigCorp.com ", company="BigCorp", job_title="CEO"),
        submission,
        SourceMeta(source_type="form", source_id="project-1", utm={"utm_source": "linkedin", "utm_term": ""}),
    )

    assert result.outcome == "created"
    lead = result.lead
    assert lead is not None
    assert lead.email == "ceo@bigcorp.com"
    assert lead.score == 70
    assert lead.status == "Qualified"
    assert lead.tags == ["decision-maker", "high-interest"]
    assert lead.custom_fields == {"budget": "R$50k", "country": "BR"}
    assert lead.utm_source == "linkedin"
    assert lead.utm_term is None

    event_types = db_session.scalars(
        select(LeadEvent.type).where(LeadEvent.lead_id == lead.id).order_by(LeadEvent.id.asc())
    ).all()
    assert event_types == ["created", "score_calculated"]


def test_missing_email_is_skipped(db_session: Session, workspace_id: uuid.UUID) -> None:
    result = LeadRepository().find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(name="No Mail"),
        {"name": "No Mail"},
        SourceMeta(source_type="form"),
    )

    assert result.outcome == "skipped_no_identity"
    assert result.lead is None
    assert _count_leads(db_session, workspace_id) == 0


def test_existing_lead_is_returned_without_rescoring(db_session: Session, workspace_id: uuid.UUID) -> None:
    repository = LeadRepository()
    first = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="joe@gmail.com"),
        {},
        SourceMeta(source_type="form"),
    )
    second = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="Joe@Gmail.com", company="NewCo", job_title="CEO"),
        {"budget": "1M"},
        SourceMeta(source_type="form"),
    )

    assert first.outcome == "created"
    assert second.outcome == "existing"
    assert second.lead is not None
    assert second.lead.id == first.lead.id
    assert second.lead.score == 0
    assert second.lead.company is None
    assert _count_leads(db_session, workspace_id) == 1


def test_same_email_in_other_workspace_is_a_different_lead(db_session: Session, workspace_id: uuid.UUID) -> None:
    other = Workspace(name="Other")
    db_session.add(other)
    db_session.commit()
    repository = LeadRepository()

    for target in (workspace_id, other.id):
        result = repository.find_or_create(
            db_session,
            target,
            CanonicalFields(email="a@b.com"),
            {},
            SourceMeta(source_type="form"),
        )
        assert result.outcome == "created"


def test_uniqueness_violation_resolves_to_existing_lead(
    db_session: Session,
    workspace_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    repository = LeadRepository()
    winner = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="a@b.com"),
        {},
        SourceMeta(source_type="form"),
    )
    assert winner.lead is not None
    winner_id = winner.lead.id

    # The losing request looked before the winner committed.
    original_lookup = LeadRepository.get_by_email
    calls = {"count": 0}

    def stale_lookup(self: LeadRepository, session: Session, ws_id: uuid.UUID, email: str) -> Lead | None:
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original_lookup(self, session, ws_id, email)

    monkeypatch.setattr(LeadRepository, "get_by_email", stale_lookup)

    loser = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="a@b.com", company="Racing Co"),
        {},
        SourceMeta(source_type="form"),
    )

    assert loser.outcome == "existing"
    assert loser.lead is not None
    assert loser.lead.id == winner_id
    assert _count_leads(db_session, workspace_id) == 1
    orphan_events = db_session.scalar(
        select(func.count()).select_from(LeadEvent).where(LeadEvent.lead_id != winner_id)
    )
    assert orphan_events == 0


def test_tag_and_status_mutations(db_session: Session, workspace_id: uuid.UUID) -> None:
    repository = LeadRepository()
    result = repository.find_or_create(
        db_session,
        workspace_id,
        CanonicalFields(email="tags@acme.com"),
        {},
        SourceMeta(source_type="manual", extra_tags=("manual",)),
    )
    lead = result.lead
    assert lead is not None

    assert repository.add_tags(db_session, lead, ["vip", " manual ", "vip", ""]) == ["vip"]
    assert repository.remove_tag(db_session, lead, "missing") is False
    assert repository.remove_tag(db_session, lead, "manual") is True
    assert repository.set_status(db_session, lead, "Contacted") == "New"
    assert repository.set_status(db_session, lead, "Contacted") is None
    db_session.commit()

    db_session.refresh(lead)
    assert lead.tags == ["low-interest", "vip"]
    assert lead.status == "Contacted"


def test_merge_tags_keeps_first_occurrence_order() -> None:
    assert merge_tags(["a", "b", "a"], ["c", "b", "  d  "]) == ["a", "b", "c", "d"]
