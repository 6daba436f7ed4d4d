"""Canonical field extraction from raw form submissions.

Each canonical field is resolved by an ordered list of resolvers: the form
schema first (when one is available), then case-insensitive synonym matching
over the submission keys. The first resolver returning a value wins.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any


CANONICAL_FIELDS = ("email", "name", "company", "job_title")

FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "email": ("email", "e-mail", "mail"),
    "name": ("name", "nome", "full name", "nome completo"),
    "company": ("company", "empresa", "organization"),
    "job_title": ("job", "cargo", "job title", "job_title"),
}

# Keys matching (equal to or containing) any of these never land in custom_fields.
RESERVED_KEYWORDS: tuple[str, ...] = tuple(
    dict.fromkeys(synonym for synonyms in FIELD_SYNONYMS.values() for synonym in synonyms)
)

_SCHEMA_TYPES = {
    "email": "EmailField",
    "name": "NameField",
}

_SCHEMA_TEXT_HINTS: dict[str, tuple[set[str], tuple[str, ...]]] = {
    # canonical field -> (exact fieldName values, label substrings)
    "company": ({"company", "empresa"}, ("empresa", "company")),
    "job_title": ({"job", "cargo"}, ("cargo", "job")),
}

Submission = Mapping[str, Any]
FormSchema = Sequence[Mapping[str, Any]]
Resolver = Callable[[str, Submission, FormSchema | None], str | None]


@dataclass(frozen=True)
class CanonicalFields:
    email: str | None = None
    name: str | None = None
    company: str | None = None
    job_title: str | None = None


def _as_text(value: Any) -> str | None:
    if value is None or value == "" or value is False:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value) or None
    return str(value)


def _attributes(descriptor: Mapping[str, Any]) -> Mapping[str, Any]:
    attributes = descriptor.get("extraAttributes")
    return attributes if isinstance(attributes, Mapping) else {}


def _schema_matches(field: str, descriptor: Mapping[str, Any]) -> bool:
    descriptor_type = descriptor.get("type")
    expected_type = _SCHEMA_TYPES.get(field)
    if expected_type is not None:
        return descriptor_type == expected_type

    hints = _SCHEMA_TEXT_HINTS.get(field)
    if hints is None or descriptor_type != "TextField":
        return False
    field_names, label_hints = hints
    attributes = _attributes(descriptor)
    field_name = str(attributes.get("fieldName") or "").lower()
    label = str(attributes.get("label") or "").lower()
    return field_name in field_names or any(hint in label for hint in label_hints)


def _descriptor_value(descriptor: Mapping[str, Any], submission: Submission) -> str | None:
    field_name = _attributes(descriptor).get("fieldName")
    if field_name:
        value = _as_text(submission.get(str(field_name)))
        if value is not None:
            return value
    descriptor_id = descriptor.get("id")
    if descriptor_id:
        return _as_text(submission.get(str(descriptor_id)))
    return None


def resolve_from_schema(field: str, submission: Submission, schema: FormSchema | None) -> str | None:
    if not schema:
        return None
    for descriptor in schema:
        if not isinstance(descriptor, Mapping) or not _schema_matches(field, descriptor):
            continue
        return _descriptor_value(descriptor, submission)
    return None


def find_value(submission: Submission, synonyms: Sequence[str]) -> Any:
    """Return the first submission value whose key equals a synonym, ignoring case.

    Synonyms are tried in order, so earlier synonyms take precedence over
    later ones regardless of key order in the submission.
    """
    lowered = {str(key).lower(): value for key, value in reversed(list(submission.items()))}
    for synonym in synonyms:
        value = lowered.get(synonym.lower())
        if value is not None and value != "":
            return value
    return None


def resolve_from_synonyms(field: str, submission: Submission, schema: FormSchema | None) -> str | None:
    return _as_text(find_value(submission, FIELD_SYNONYMS[field]))


DEFAULT_RESOLVERS: tuple[Resolver, ...] = (resolve_from_schema, resolve_from_synonyms)


def extract_canonical_fields(
    submission: Submission,
    schema: FormSchema | None = None,
    resolvers: Sequence[Resolver] = DEFAULT_RESOLVERS,
) -> CanonicalFields:
    resolved: dict[str, str | None] = {}
    for field in CANONICAL_FIELDS:
        value: str | None = None
        for resolver in resolvers:
            value = resolver(field, submission, schema)
            if value is not None:
                break
        resolved[field] = value.strip() if isinstance(value, str) and value.strip() else None
    return CanonicalFields(**resolved)


def is_reserved_key(key: str) -> bool:
    # Substring match over-excludes keys like "company_size"; kept as-is.
    lowered = key.lower()
    return any(lowered == keyword or keyword in lowered for keyword in RESERVED_KEYWORDS)


def partition_custom_fields(submission: Submission) -> dict[str, Any]:
    return {str(key): value for key, value in submission.items() if not is_reserved_key(str(key))}
