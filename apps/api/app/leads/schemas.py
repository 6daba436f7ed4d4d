from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class SubmissionCreate(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    submission_id: UUID | None = None
    utm: dict[str, Any] = Field(default_factory=dict)


class SubmissionAccepted(BaseModel):
    status: Literal["received"] = "received"
    submission_id: UUID
    lead_id: UUID | None = None
    outcome: str


class LeadCaptureRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    workspace_id: UUID
    email: EmailStr
    name: str | None = None
    phone: str | None = None
    page_url: str | None = None
    source: str | None = None


class LeadCaptureResponse(BaseModel):
    success: bool = True
    lead_id: UUID
    outcome: str


class LeadCreate(BaseModel):
    email: EmailStr
    name: str | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    notes: str | None = None
    status: str | None = None


class LeadUpdate(BaseModel):
    name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    notes: str | None = None


class LeadStatusUpdate(BaseModel):
    status: str = Field(min_length=1, max_length=64)


class LeadTagsAdd(BaseModel):
    tags: list[str] = Field(min_length=1)

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, value: list[str]) -> list[str]:
        cleaned = [tag.strip() for tag in value if tag.strip()]
        if not cleaned:
            raise ValueError("at least one non-blank tag is required")
        return cleaned


class LeadScoreUpdate(BaseModel):
    score: int = Field(ge=0, le=100)
    reason: str = Field(min_length=1)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    email: str
    name: str | None
    phone: str | None
    company: str | None
    job_title: str | None
    notes: str | None
    score: int
    score_reason: str | None
    status: str
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    source_type: str
    source_id: str | None
    page_url: str | None
    utm_source: str | None
    utm_medium: str | None
    utm_campaign: str | None
    utm_content: str | None
    utm_term: str | None
    landing_page_url: str | None
    referrer: str | None
    ai_analysis: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class LeadPage(BaseModel):
    items: list[LeadRead]
    total: int
    page: int
    page_size: int
    total_pages: int


class LeadEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: UUID
    type: str
    payload: dict[str, Any]
    created_at: datetime


class HotLead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    email: str
    company: str | None
    score: int
    status: str


class LeadStats(BaseModel):
    total: int
    qualified: int
    by_status: dict[str, int]
    hot_leads: list[HotLead]


class LeadAnalysis(BaseModel):
    score_final: int = Field(ge=0, le=100)
    score_adjustment_reason: str
    lead_temperature: Literal["Hot", "Warm", "Cold"]
    tags: list[str] = Field(default_factory=list)
    marketing_summary: str
