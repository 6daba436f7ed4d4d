from __future__ import annotations

import pytest

from app.leads.scoring import (
    BASE_SCORE_REASON,
    MAX_SCORE,
    initial_status,
    score_lead,
)


def test_decision_maker_with_budget_scores_seventy() -> None:
    result = score_lead("ceo@bigcorp.com", "BigCorp", "CEO", {"budget": "R$50k"})

    assert result.score == 70
    assert "decision-maker" in result.tags
    assert "high-interest" in result.tags
    assert result.reason == (
        "This lead scored 70 points for: corporate email, company provided, job title provided, "
        "decision-maker title, budget informed."
    )


def test_free_email_without_signals_gets_base_score() -> None:
    result = score_lead("joe@gmail.com", None, None, {})

    assert result.score == 0
    assert result.tags == ("low-interest",)
    assert result.reason == BASE_SCORE_REASON
    assert result.rules == ()


def test_low_intent_budget_tags_without_points() -> None:
    result = score_lead("ana@acme.com", None, None, {"Orçamento": "Não tenho"})

    assert result.score == 10
    assert "no-budget" in result.tags
    assert "budget informed" not in result.rules


def test_high_urgency_adds_thirty_points() -> None:
    result = score_lead("ana@acme.com", "Acme", None, {"timeline": "ASAP please"})

    assert result.score == 50
    assert result.rules[-1] == "high urgency"
    assert "high-interest" not in result.tags
    assert "low-interest" not in result.tags


def test_single_character_fields_do_not_count_as_filled() -> None:
    result = score_lead("ana@acme.com", "A", " ", {})

    assert result.score == 10


@pytest.mark.parametrize(
    ("email", "company", "job_title", "data"),
    [
        ("founder@startup.io", "Startup", "Founder & CEO", {"budget": "100k", "urgency": "immediately"}),
        ("x@hotmail.com", "Co", "Head of Sales", {"prazo": "esta semana", "verba": "zero"}),
        (None, None, None, None),
    ],
)
def test_score_is_bounded_and_deterministic(
    email: str | None,
    company: str | None,
    job_title: str | None,
    data: dict[str, str] | None,
) -> None:
    first = score_lead(email, company, job_title, data)
    second = score_lead(email, company, job_title, data)

    assert first == second
    assert 0 <= first.score <= MAX_SCORE


def test_initial_status_threshold() -> None:
    assert initial_status(60) == "Qualified"
    assert initial_status(59) == "New"
