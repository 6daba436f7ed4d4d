from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import openai
from pydantic import ValidationError

from app.core.config import get_settings
from app.leads.models import Lead
from app.leads.schemas import LeadAnalysis


logger = logging.getLogger("app.leads.enrichment")

_SYSTEM_PROMPT = (
    "You are a B2B lead qualification analyst. Given a lead profile and the raw data of its latest "
    "form submission, review the rule-based score and respond with a JSON object containing: "
    '"score_final" (integer 0-100), "score_adjustment_reason" (string), '
    '"lead_temperature" ("Hot", "Warm" or "Cold"), "tags" (list of short strings) and '
    '"marketing_summary" (two or three sentences for the sales team).'
)


class EnrichmentError(Exception):
    pass


class LeadAnalyzer(Protocol):
    def analyze(self, lead: Lead, submission_data: dict[str, Any]) -> LeadAnalysis: ...


class OpenAILeadAnalyzer:
    def __init__(self, api_key: str, model: str, timeout: float) -> None:
        self.model = model
        self.client = openai.OpenAI(api_key=api_key, timeout=timeout)

    def analyze(self, lead: Lead, submission_data: dict[str, Any]) -> LeadAnalysis:
        profile = {
            "name": lead.name,
            "email": lead.email,
            "company": lead.company,
            "job_title": lead.job_title,
            "current_score": lead.score,
            "score_reason": lead.score_reason,
            "status": lead.status,
            "tags": lead.tags,
            "custom_fields": lead.custom_fields,
            "submission_data": submission_data,
        }
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": json.dumps(profile, default=str, ensure_ascii=False)},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
            )
        except openai.OpenAIError as exc:
            raise EnrichmentError(f"analysis request failed: {exc}") from exc

        content = response.choices[0].message.content or ""
        try:
            return LeadAnalysis.model_validate(json.loads(content))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise EnrichmentError("analysis response was not valid JSON") from exc


def get_lead_analyzer() -> LeadAnalyzer:
    settings = get_settings()
    if not settings.openai_api_key:
        raise EnrichmentError("lead analysis is not configured")
    return OpenAILeadAnalyzer(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.openai_timeout_seconds,
    )
