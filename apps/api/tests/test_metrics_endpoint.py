from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automations.models import Automation
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.leads.models import FormProject, Workspace
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("AUTOMATION_DISPATCH_MODE", "inline")
    monkeypatch.setenv("AUTO_RUN_AUTOMATIONS", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_intake_and_automation_metrics(client: TestClient, db_session: Session) -> None:
    workspace = Workspace(name="Metrics Workspace")
    db_session.add(workspace)
    db_session.flush()
    form = FormProject(workspace_id=workspace.id, name="Metrics Form", content=[])
    db_session.add(form)
    db_session.add(
        Automation(
            workspace_id=workspace.id,
            name="Metrics flow",
            is_active=True,
            flow_data={
                "nodes": [
                    {"id": "t", "type": "trigger", "data": {"config": {}}},
                    {"id": "s", "type": "action_status", "data": {"config": {"status": "Contacted"}}},
                ],
                "edges": [{"source": "t", "target": "s"}],
            },
        )
    )
    db_session.commit()

    health = client.get("/health")
    assert health.status_code == 200

    submission = client.post(f"/api/projects/{form.id}/submissions", json={"data": {"email": "m@example.com"}})
    assert submission.status_code == 201

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "leads_ingested_total" in body
    assert "automation_runs_total" in body
    assert "automation_actions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/projects/{id}/submissions"' in body
    assert 'outcome="created"' in body
    assert 'state="Completed"' in body
    assert 'node_type="action_status"' in body


@pytest.mark.parametrize("roles", [["leads.viewer"]])
def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
