from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from app.leads.extraction import find_value


MAX_SCORE = 100
QUALIFIED_THRESHOLD = 60
HIGH_INTEREST_THRESHOLD = 70
LOW_INTEREST_THRESHOLD = 30

FREE_EMAIL_PROVIDERS = frozenset(
    {
        "gmail.com",
        "hotmail.com",
        "outlook.com",
        "live.com",
        "yahoo.com",
        "icloud.com",
        "aol.com",
        "uol.com.br",
        "bol.com.br",
    }
)

DECISION_MAKER_KEYWORDS = (
    "ceo",
    "founder",
    "fundador",
    "director",
    "diretor",
    "manager",
    "gerente",
    "head",
    "vp",
    "president",
    "presidente",
    "partner",
    "sócio",
    "socio",
    "owner",
)

BUDGET_KEYS = ("budget", "orçamento", "orcamento", "verba", "investimento", "investment")
LOW_INTENT_PHRASES = (
    "none",
    "zero",
    "n/a",
    "no budget",
    "não tenho",
    "nao tenho",
    "sem orçamento",
    "sem orcamento",
    "sem verba",
)

URGENCY_KEYS = ("urgency", "urgência", "urgencia", "timeline", "prazo")
HIGH_URGENCY_PHRASES = (
    "immediately",
    "asap",
    "this week",
    "right now",
    "imediato",
    "imediatamente",
    "agora",
    "em breve",
    "essa semana",
    "esta semana",
)

BASE_SCORE_REASON = "Base score: no qualification signals found."

TAG_DECISION_MAKER = "decision-maker"
TAG_NO_BUDGET = "no-budget"
TAG_HIGH_INTEREST = "high-interest"
TAG_LOW_INTEREST = "low-interest"


@dataclass(frozen=True)
class ScoreResult:
    score: int
    reason: str
    tags: tuple[str, ...] = field(default_factory=tuple)
    rules: tuple[str, ...] = field(default_factory=tuple)


def _filled(value: str | None) -> bool:
    return value is not None and len(value.strip()) > 1


def email_domain(email: str | None) -> str | None:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain or None


def _contains_any(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)


def score_lead(
    email: str | None,
    company: str | None,
    job_title: str | None,
    submission_data: Mapping[str, Any] | None = None,
) -> ScoreResult:
    """Score a lead from its canonical fields and raw submission.

    All rules are additive and evaluated in a fixed order, so the same input
    always yields the same score, reason and tags.
    """
    data = submission_data or {}
    score = 0
    rules: list[str] = []
    tags: list[str] = []

    domain = email_domain(email)
    if domain is not None and domain not in FREE_EMAIL_PROVIDERS:
        score += 10
        rules.append("corporate email")

    if _filled(company):
        score += 10
        rules.append("company provided")

    if _filled(job_title):
        score += 10
        rules.append("job title provided")

    if job_title and _contains_any(job_title, DECISION_MAKER_KEYWORDS):
        score += 20
        rules.append("decision-maker title")
        tags.append(TAG_DECISION_MAKER)

    budget = find_value(data, BUDGET_KEYS)
    if budget is not None:
        if _contains_any(str(budget), LOW_INTENT_PHRASES):
            tags.append(TAG_NO_BUDGET)
        else:
            score += 20
            rules.append("budget informed")

    urgency = find_value(data, URGENCY_KEYS)
    if urgency is not None and _contains_any(str(urgency), HIGH_URGENCY_PHRASES):
        score += 30
        rules.append("high urgency")

    score = min(score, MAX_SCORE)

    if score >= HIGH_INTEREST_THRESHOLD:
        tags.append(TAG_HIGH_INTEREST)
    elif score < LOW_INTEREST_THRESHOLD:
        tags.append(TAG_LOW_INTEREST)

    if rules:
        reason = f"This lead scored {score} points for: {', '.join(rules)}."
    else:
        reason = BASE_SCORE_REASON

    return ScoreResult(score=score, reason=reason, tags=tuple(tags), rules=tuple(rules))


def initial_status(score: int) -> str:
    return "Qualified" if score >= QUALIFIED_THRESHOLD else "New"
