from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


NodeType = Literal[
    "trigger",
    "condition",
    "action_email",
    "action_tag",
    "action_status",
    "action_webhook",
    "action_delay",
]
ConditionOperator = Literal["equals", "not_equals", "contains"]
DelayUnit = Literal["minutes", "hours", "days"]
AutomationTemplate = Literal["scratch", "simple-email", "tag-qualify", "webhook-integration"]


class _NodeConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TriggerConfig(_NodeConfig):
    form_id: str | None = Field(default=None, alias="formId")


class ConditionConfig(_NodeConfig):
    field: str = Field(min_length=1)
    operator: ConditionOperator = "equals"
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, value: Any) -> str:
        return "" if value is None else str(value)


class TagConfig(_NodeConfig):
    tags: list[str] = Field(min_length=1)

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, value: list[str]) -> list[str]:
        cleaned = list(dict.fromkeys(tag.strip() for tag in value if tag.strip()))
        if not cleaned:
            raise ValueError("at least one non-blank tag is required")
        return cleaned


class StatusConfig(_NodeConfig):
    status: str = Field(min_length=1)


class WebhookConfig(_NodeConfig):
    url: str = Field(min_length=1)

    @field_validator("url")
    @classmethod
    def require_http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("webhook url must use http or https")
        return value


class EmailConfig(_NodeConfig):
    template_id: UUID = Field(alias="templateId")


class DelayConfig(_NodeConfig):
    duration: int = Field(ge=1)
    unit: DelayUnit = "minutes"


class TriggerNode(BaseModel):
    id: str
    type: Literal["trigger"]
    label: str | None = None
    config: TriggerConfig


class ConditionNode(BaseModel):
    id: str
    type: Literal["condition"]
    label: str | None = None
    config: ConditionConfig


class TagNode(BaseModel):
    id: str
    type: Literal["action_tag"]
    label: str | None = None
    config: TagConfig


class StatusNode(BaseModel):
    id: str
    type: Literal["action_status"]
    label: str | None = None
    config: StatusConfig


class WebhookNode(BaseModel):
    id: str
    type: Literal["action_webhook"]
    label: str | None = None
    config: WebhookConfig


class EmailNode(BaseModel):
    id: str
    type: Literal["action_email"]
    label: str | None = None
    config: EmailConfig


class DelayNode(BaseModel):
    id: str
    type: Literal["action_delay"]
    label: str | None = None
    config: DelayConfig


FlowNode = Annotated[
    TriggerNode | ConditionNode | TagNode | StatusNode | WebhookNode | EmailNode | DelayNode,
    Field(discriminator="type"),
]
ActionNode = TagNode | StatusNode | WebhookNode | EmailNode

flow_node_adapter = TypeAdapter(FlowNode)


class FlowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    source_handle: str | None = Field(default=None, alias="sourceHandle")


def _check_flow_structure(flow_data: dict[str, Any]) -> None:
    nodes = flow_data.get("nodes", [])
    edges = flow_data.get("edges", [])
    if not isinstance(nodes, list) or not isinstance(edges, list):
        raise ValueError("flow_data must contain 'nodes' and 'edges' lists")
    seen: set[str] = set()
    for node in nodes:
        if not isinstance(node, dict) or not isinstance(node.get("id"), str) or not node["id"]:
            raise ValueError("every node needs a string id")
        if node["id"] in seen:
            raise ValueError(f"duplicate node id: {node['id']}")
        seen.add(node["id"])
    for edge in edges:
        if not isinstance(edge, dict) or not isinstance(edge.get("source"), str) or not isinstance(edge.get("target"), str):
            raise ValueError("every edge needs string source and target")


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1)
    template: AutomationTemplate = "scratch"
    form_id: str | None = None


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None
    trigger_config: dict[str, Any] | None = None


class AutomationFlowUpdate(BaseModel):
    flow_data: dict[str, Any]

    @model_validator(mode="after")
    def validate_flow_structure(self) -> "AutomationFlowUpdate":
        _check_flow_structure(self.flow_data)
        return self


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    trigger_type: str
    trigger_config: dict[str, Any]
    is_active: bool
    flow_data: dict[str, Any]
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class GraphValidationIssue(BaseModel):
    code: str
    message: str
    node_id: str | None = None


class AutomationValidationRead(BaseModel):
    valid: bool
    errors: list[GraphValidationIssue] = Field(default_factory=list)


class AutomationStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    lead_id: UUID
    node_id: str
    node_type: str
    trigger_key: str
    status: str
    detail: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class EmailTemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    body_html: str = Field(min_length=1)
    is_active: bool = True


class EmailTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    subject: str | None = Field(default=None, min_length=1)
    body_html: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class EmailTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    subject: str
    body_html: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
