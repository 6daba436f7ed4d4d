from __future__ import annotations

from app.leads.extraction import (
    CanonicalFields,
    extract_canonical_fields,
    find_value,
    is_reserved_key,
    partition_custom_fields,
    resolve_from_schema,
    resolve_from_synonyms,
)


SCHEMA = [
    {"id": "f-1", "type": "NameField", "extraAttributes": {"label": "Your name"}},
    {"id": "f-2", "type": "EmailField", "extraAttributes": {"fieldName": "contact_mail"}},
    {"id": "f-3", "type": "TextField", "extraAttributes": {"label": "Nome da Empresa"}},
    {"id": "f-4", "type": "TextField", "extraAttributes": {"fieldName": "cargo"}},
    {"id": "f-5", "type": "TextField", "extraAttributes": {"label": "Country"}},
]


def test_schema_resolution_reads_field_name_then_descriptor_id() -> None:
    submission = {
        "f-1": "Ana Souza",
        "contact_mail": "ana@acme.com",
        "f-3": "Acme",
        "cargo": "Diretora",
        "f-5": "BR",
    }

    fields = extract_canonical_fields(submission, SCHEMA)

    assert fields == CanonicalFields(email="ana@acme.com", name="Ana Souza", company="Acme", job_title="Diretora")


def test_synonym_resolution_is_case_insensitive_and_ordered() -> None:
    submission = {"Mail": "second@acme.com", "EMAIL": "first@acme.com", "Nome": "Ana", "Empresa": "Acme"}

    fields = extract_canonical_fields(submission)

    assert fields.email == "first@acme.com"
    assert fields.name == "Ana"
    assert fields.company == "Acme"
    assert fields.job_title is None


def test_schema_miss_falls_back_to_synonyms() -> None:
    schema = [{"id": "f-9", "type": "TextField", "extraAttributes": {"label": "Favourite colour"}}]
    submission = {"email": "bob@example.org", "job title": "Engineer"}

    fields = extract_canonical_fields(submission, schema)

    assert fields.email == "bob@example.org"
    assert fields.job_title == "Engineer"


def test_blank_values_are_treated_as_absent() -> None:
    fields = extract_canonical_fields({"email": "   ", "name": "", "company": None})

    assert fields == CanonicalFields()


def test_resolvers_return_none_when_nothing_matches() -> None:
    assert resolve_from_schema("email", {"email": "a@b.com"}, None) is None
    assert resolve_from_synonyms("company", {"employer": "Acme"}, None) is None
    assert find_value({"BUDGET": ""}, ("budget",)) is None


def test_custom_fields_exclude_reserved_keys_by_substring() -> None:
    submission = {
        "email": "a@b.com",
        "Full Name": "Ana",
        "company_size": "50-100",
        "country": "BR",
        "budget": "R$50k",
    }

    custom = partition_custom_fields(submission)

    assert custom == {"country": "BR", "budget": "R$50k"}
    assert is_reserved_key("company_size")
    assert not is_reserved_key("country")
