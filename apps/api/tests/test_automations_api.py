from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.automations.models import Automation, AutomationStepRecord
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.leads.api import get_current_user
from app.leads.models import FormProject, Lead, Workspace, WorkspaceMember
from app.leads.service import ActorUser
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
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def workspace(db_session: Session) -> Workspace:
    workspace = Workspace(name="Acme Marketing", owner_user_id="owner-1")
    db_session.add(workspace)
    db_session.flush()
    db_session.add(WorkspaceMember(workspace_id=workspace.id, user_id="owner-1", role="owner"))
    db_session.commit()
    return workspace


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    state = {"user_id": "owner-1"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=state["user_id"])

    def set_user(user_id: str) -> None:
        state["user_id"] = user_id

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_user
    app.dependency_overrides.clear()


def _create(test_client: TestClient, workspace_id: uuid.UUID, **payload: Any) -> dict[str, Any]:
    response = test_client.post(f"/api/workspaces/{workspace_id}/automations", json={"name": "Flow", **payload})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.parametrize(
    ("template", "node_ids"),
    [
        ("scratch", ["trigger-1"]),
        ("simple-email", ["trigger-1", "email-1"]),
        ("tag-qualify", ["trigger-1", "tag-1", "status-1"]),
        ("webhook-integration", ["trigger-1", "webhook-1"]),
    ],
)
def test_create_automation_from_template(
    client: tuple[TestClient, Callable[[str], None]],
    workspace: Workspace,
    template: str,
    node_ids: list[str],
) -> None:
    test_client, _ = client

    created = _create(test_client, workspace.id, template=template, form_id="form-42")

    assert created["is_active"] is False
    assert created["trigger_type"] == "form_submission"
    assert created["trigger_config"] == {"formId": "form-42"}
    assert created["created_by"] == "owner-1"
    assert [node["id"] for node in created["flow_data"]["nodes"]] == node_ids
    assert created["flow_data"]["nodes"][0]["data"]["config"] == {"formId": "form-42"}


def test_update_and_list_automations(client: tuple[TestClient, Callable[[str], None]], workspace: Workspace) -> None:
    test_client, _ = client
    created = _create(test_client, workspace.id, template="tag-qualify")

    updated = test_client.patch(f"/api/automations/{created['id']}", json={"name": "  Qualify  ", "is_active": True})

    assert updated.status_code == 200
    assert updated.json()["name"] == "Qualify"
    assert updated.json()["is_active"] is True
    listed = test_client.get(f"/api/workspaces/{workspace.id}/automations")
    assert [item["id"] for item in listed.json()] == [created["id"]]


def test_save_flow_stores_document_verbatim(client: tuple[TestClient, Callable[[str], None]], workspace: Workspace) -> None:
    test_client, _ = client
    created = _create(test_client, workspace.id)
    flow = {
        "nodes": [
            {
                "id": "trigger-1",
                "type": "trigger",
                "position": {"x": 12.5, "y": 40},
                "data": {"label": "Start", "nodeType": "trigger", "config": {}, "ui": {"collapsed": True}},
            },
            {
                "id": "wait",
                "type": "action_delay",
                "position": {"x": 12.5, "y": 140},
                "data": {"label": "Wait", "nodeType": "action_delay", "config": {"duration": 0}},
            },
        ],
        "edges": [{"id": "e1", "source": "trigger-1", "target": "wait", "animated": True}],
        "viewport": {"x": 0, "y": 0, "zoom": 1.25},
    }

    saved = test_client.put(f"/api/automations/{created['id']}/flow", json={"flow_data": flow})

    assert saved.status_code == 200
    assert saved.json()["flow_data"] == flow
    assert test_client.get(f"/api/automations/{created['id']}").json()["flow_data"] == flow

    validation = test_client.post(f"/api/automations/{created['id']}/validate")
    assert validation.status_code == 200
    assert validation.json()["valid"] is False
    assert validation.json()["errors"][0]["code"] == "invalid_node_config"
    assert validation.json()["errors"][0]["node_id"] == "wait"


def test_save_flow_rejects_malformed_structure(
    client: tuple[TestClient, Callable[[str], None]],
    workspace: Workspace,
) -> None:
    test_client, _ = client
    created = _create(test_client, workspace.id)

    response = test_client.put(
        f"/api/automations/{created['id']}/flow",
        json={"flow_data": {"nodes": [{"id": "a"}, {"id": "a"}], "edges": []}},
    )

    assert response.status_code == 422


def test_validate_accepts_template_flow(client: tuple[TestClient, Callable[[str], None]], workspace: Workspace) -> None:
    test_client, _ = client
    created = _create(test_client, workspace.id, template="tag-qualify")

    response = test_client.post(f"/api/automations/{created['id']}/validate")

    assert response.json() == {"valid": True, "errors": []}


def test_steps_are_listed_after_a_submission_runs_the_flow(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    workspace: Workspace,
) -> None:
    test_client, _ = client
    form = FormProject(workspace_id=workspace.id, name="Contact", content=[])
    db_session.add(form)
    db_session.commit()
    created = _create(test_client, workspace.id, template="tag-qualify", form_id=str(form.id))
    test_client.patch(f"/api/automations/{created['id']}", json={"is_active": True})

    submitted = test_client.post(
        f"/api/projects/{form.id}/submissions",
        json={"data": {"email": "maria@gmail.com", "name": "Maria"}},
    )
    assert submitted.status_code == 201

    steps = test_client.get(f"/api/automations/{created['id']}/steps")
    assert steps.status_code == 200
    assert sorted(step["node_id"] for step in steps.json()) == ["status-1", "tag-1"]
    assert {step["status"] for step in steps.json()} == {"Succeeded"}
    lead = db_session.scalar(select(Lead).where(Lead.email == "maria@gmail.com"))
    assert lead is not None
    db_session.refresh(lead)
    assert lead.status == "Qualified"
    assert "New Lead" in lead.tags


def test_delete_automation_removes_step_records(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    workspace: Workspace,
) -> None:
    test_client, _ = client
    form = FormProject(workspace_id=workspace.id, name="Contact", content=[])
    db_session.add(form)
    db_session.commit()
    created = _create(test_client, workspace.id, template="tag-qualify")
    test_client.patch(f"/api/automations/{created['id']}", json={"is_active": True})
    test_client.post(f"/api/projects/{form.id}/submissions", json={"data": {"email": "x@y.com"}})

    response = test_client.delete(f"/api/automations/{created['id']}")

    assert response.status_code == 204
    assert db_session.get(Automation, uuid.UUID(created["id"])) is None
    assert db_session.scalar(select(func.count()).select_from(AutomationStepRecord)) == 0
    missing = test_client.get(f"/api/automations/{created['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "automation_get_failed"


def test_non_member_cannot_touch_automations(
    client: tuple[TestClient, Callable[[str], None]],
    workspace: Workspace,
) -> None:
    test_client, set_user = client
    created = _create(test_client, workspace.id)

    set_user("stranger-1")
    listed = test_client.get(f"/api/workspaces/{workspace.id}/automations")
    activated = test_client.patch(f"/api/automations/{created['id']}", json={"is_active": True})

    assert listed.status_code == 403
    assert activated.status_code == 403
    assert activated.json()["code"] == "automation_update_failed"
    set_user("owner-1")
    assert test_client.get(f"/api/automations/{created['id']}").json()["is_active"] is False


def test_email_template_crud(client: tuple[TestClient, Callable[[str], None]], workspace: Workspace) -> None:
    test_client, _ = client
    base = f"/api/workspaces/{workspace.id}/email-templates"

    created = test_client.post(
        base,
        json={"name": "Welcome", "subject": "Hi {{lead.name}}", "body_html": "<p>Thanks, {{lead.name}}</p>"},
    )
    assert created.status_code == 201
    template_id = created.json()["id"]
    assert created.json()["is_active"] is True

    updated = test_client.patch(f"{base}/{template_id}", json={"is_active": False, "subject": "Hello {{lead.name}}"})
    assert updated.json()["is_active"] is False
    assert updated.json()["subject"] == "Hello {{lead.name}}"

    assert [item["id"] for item in test_client.get(base).json()] == [template_id]
    assert test_client.delete(f"{base}/{template_id}").status_code == 204
    gone = test_client.get(f"{base}/{template_id}")
    assert gone.status_code == 404
    assert gone.json()["code"] == "email_template_get_failed"


def test_email_template_is_scoped_to_its_workspace(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    workspace: Workspace,
) -> None:
    test_client, _ = client
    other = Workspace(name="Other")
    db_session.add(other)
    db_session.flush()
    db_session.add(WorkspaceMember(workspace_id=other.id, user_id="owner-1", role="member"))
    db_session.commit()
    created = test_client.post(
        f"/api/workspaces/{workspace.id}/email-templates",
        json={"name": "Welcome", "subject": "Hi", "body_html": "<p>Hi</p>"},
    ).json()

    response = test_client.get(f"/api/workspaces/{other.id}/email-templates/{created['id']}")

    assert response.status_code == 404
