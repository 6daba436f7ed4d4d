from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.automations.models import Automation
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.leads.api import get_current_user
from app.leads.models import FormProject, Workspace, WorkspaceMember
from app.leads.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    monkeypatch.setenv("AUTO_RUN_AUTOMATIONS", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def project(db_session: Session) -> FormProject:
    workspace = Workspace(name="OTel Workspace")
    db_session.add(workspace)
    db_session.flush()
    db_session.add(WorkspaceMember(workspace_id=workspace.id, user_id="user-1", role="owner"))
    form = FormProject(workspace_id=workspace.id, name="OTel Form", content=[])
    db_session.add(form)
    db_session.commit()
    return form


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="user-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(
    client: TestClient,
    project: FormProject,
    span_exporter: InMemorySpanExporter,
) -> None:
    response = client.get(f"/api/workspaces/{project.workspace_id}/leads", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_intake_and_automation_spans_are_recorded(
    client: TestClient,
    db_session: Session,
    project: FormProject,
    span_exporter: InMemorySpanExporter,
) -> None:
    automation = Automation(
        workspace_id=project.workspace_id,
        name="Traced",
        is_active=True,
        flow_data={
            "nodes": [
                {"id": "t", "type": "trigger", "data": {"config": {}}},
                {"id": "g", "type": "action_tag", "data": {"config": {"tags": ["traced"]}}},
            ],
            "edges": [{"source": "t", "target": "g"}],
        },
    )
    db_session.add(automation)
    db_session.commit()

    response = client.post(
        f"/api/projects/{project.id}/submissions",
        json={"data": {"email": "traced@example.com"}},
        headers={"X-Correlation-Id": "otel-run-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    intake_spans = [span for span in spans if span.name == "leads.intake"]
    assert intake_spans
    assert intake_spans[-1].attributes.get("outcome") == "created"

    run_spans = [span for span in spans if span.name == "automation.run"]
    assert run_spans
    assert any(
        span.attributes.get("automation.id") == str(automation.id)
        and span.attributes.get("lead.id") == response.json()["lead_id"]
        and span.attributes.get("automation.state") == "Completed"
        for span in run_spans
    )
