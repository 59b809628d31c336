"""Canonical directory row contract.

Every normalizer emits rows shaped by these field specs so the diff engine
sees one format regardless of the upstream feed. Header aliases cover the
common spellings found in SIS exports and OneRoster payloads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple

from flask_app.models.directory import ContactType


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical directory field."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()

    def headers(self) -> Tuple[str, ...]:
        return (self.name, *self.aliases)


DIRECTORY_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="external_id",
        description="Stable identifier supplied by the source system.",
        aliases=("sourcedid", "sourced_id", "source_id", "record_id", "user_id", "id"),
    ),
    FieldSpec(
        name="email",
        description="Primary email address (normalized lower-case).",
        required=True,
        aliases=("email_address", "primary_email", "mail"),
    ),
    FieldSpec(
        name="first_name",
        description="Given name.",
        aliases=("given_name", "givenname", "first"),
    ),
    FieldSpec(
        name="last_name",
        description="Family name.",
        aliases=("family_name", "familyname", "surname", "last"),
    ),
    FieldSpec(
        name="contact_type",
        description="Directory contact type; raw roles are mapped through map_role_to_contact_type.",
        aliases=("role", "roles", "type", "user_type"),
    ),
)

_ROLE_MAP: Mapping[str, str] = {
    "contact": ContactType.PARENT_GUARDIAN.value,
    "guardian": ContactType.PARENT_GUARDIAN.value,
    "parent": ContactType.PARENT_GUARDIAN.value,
    "parent_guardian": ContactType.PARENT_GUARDIAN.value,
    "relative": ContactType.PARENT_GUARDIAN.value,
    "teacher": ContactType.TEACHER.value,
    "staff": ContactType.STAFF.value,
    "administrator": ContactType.STAFF.value,
    "aide": ContactType.STAFF.value,
    "student": ContactType.STUDENT.value,
    "other": ContactType.OTHER.value,
}


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = (header or "").strip().lstrip("\ufeff").lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def get_directory_alias_map() -> Mapping[str, str]:
    mapping: dict[str, str] = {}
    for field in DIRECTORY_FIELDS:
        for header in field.headers():
            mapping[normalize_header(header)] = field.name
    return mapping


def get_required_headers() -> Tuple[str, ...]:
    return tuple(field.name for field in DIRECTORY_FIELDS if field.required)


def resolve_headers(headers: Sequence[str]) -> Tuple[str | None, ...]:
    """
    Map raw headers to canonical field names; unknown headers map to ``None``.
    """

    alias_map = get_directory_alias_map()
    return tuple(alias_map.get(normalize_header(header)) for header in headers)


def map_role_to_contact_type(role: str | None) -> str | None:
    """
    Translate an upstream role (OneRoster, SIS) to a directory contact type.

    Values that are already contact types pass through; unknown non-empty
    roles fall back to ``other``. Empty input returns ``None`` so the diff
    engine applies its own default.
    """

    if role is None:
        return None
    token = normalize_header(str(role))
    if not token:
        return None
    return _ROLE_MAP.get(token, ContactType.OTHER.value)
