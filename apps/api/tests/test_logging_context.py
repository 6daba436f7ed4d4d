from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automations.models import Automation
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.leads.api import get_current_user
from app.leads.models import FormProject, Workspace, WorkspaceMember
from app.leads.service import ActorUser
from app.logging import JsonLogFormatter
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def project(db_session: Session) -> FormProject:
    workspace = Workspace(name="Log Workspace")
    db_session.add(workspace)
    db_session.flush()
    db_session.add(WorkspaceMember(workspace_id=workspace.id, user_id="user-1", role="owner"))
    form = FormProject(workspace_id=workspace.id, name="Log Form", content=[])
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


def _tag_flow() -> dict[str, Any]:
    return {
        "nodes": [
            {"id": "t", "type": "trigger", "data": {"nodeType": "trigger", "config": {}}},
            {"id": "tag", "type": "action_tag", "data": {"nodeType": "action_tag", "config": {"tags": ["logged"]}}},
        ],
        "edges": [{"id": "e1", "source": "t", "target": "tag"}],
    }


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/leads/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "X-Forwarded-For": "203.0.113.9"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "client_ip", None) == "203.0.113.9"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_automation_run_and_correlation_id(
    client: TestClient,
    db_session: Session,
    project: FormProject,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    automation = Automation(workspace_id=project.workspace_id, name="Logged", is_active=True, flow_data=_tag_flow())
    db_session.add(automation)
    db_session.commit()

    response = client.post(
        f"/api/projects/{project.id}/submissions",
        json={"data": {"email": "logged@example.com"}},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 201

    intake_records = [record for record in caplog.records if record.getMessage() == "lead.intake.processed"]
    assert any(getattr(record, "correlation_id", None) == "abc-456" for record in intake_records)

    run_records = [
        record
        for record in caplog.records
        if record.name == "app.automations.executor" and record.getMessage() == "automation.run.completed"
    ]
    assert run_records
    record = run_records[-1]
    assert getattr(record, "correlation_id", None) == "abc-456"
    assert getattr(record, "automation_run", None) == f"{automation.id}:{response.json()['lead_id']}:{response.json()['submission_id']}"
    assert getattr(record, "run_state", None) == "Completed"
    assert getattr(record, "outcome", None) == "ok"


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.automations.executor",
            "levelname": "WARNING",
            "msg": "automation.step.failed",
            "correlation_id": "corr-9",
            "automation_run": "a:b:c",
            "node_id": "hook",
            "error": "x" * 600,
            "secret_token": "do-not-log",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation.step.failed"
    assert payload["correlation_id"] == "corr-9"
    assert payload["automation_run"] == "a:b:c"
    assert payload["fields"]["node_id"] == "hook"
    assert len(payload["fields"]["error"]) == 500
    assert "secret_token" not in payload["fields"]
