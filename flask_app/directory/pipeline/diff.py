"""
Diff engine for directory reconciliation.

``compute_diff`` compares freshly normalized feed rows against the canonical
records of one tenant scope and classifies every external id into exactly one
of adds, updates, deactivation candidates, or unchanged. It is a pure
function: no database access, no clock, deterministic ordering.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from flask_app.models.directory import ContactType, build_scope_key

TRACKED_FIELDS: tuple[str, ...] = ("email", "first_name", "last_name", "contact_type")
CONTACT_TYPES: frozenset[str] = frozenset(member.value for member in ContactType)
DEFAULT_CONTACT_TYPE = ContactType.OTHER.value
MAX_ROW_ERRORS = 50

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ADD = "add"
UPDATE = "update"
DEACTIVATE = "deactivate"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Scope:
    """Tenant scope: a school, a district, or a school within a district."""

    school_id: str | None = None
    district_id: str | None = None

    @classmethod
    def coerce(cls, *, school_id: Any = None, district_id: Any = None) -> "Scope":
        resolved_school = str(school_id).strip() if school_id not in (None, "") else None
        resolved_district = str(district_id).strip() if district_id not in (None, "") else None
        if not resolved_school and not resolved_district:
            raise ValueError("A scope requires school_id or district_id.")
        return cls(school_id=resolved_school or None, district_id=resolved_district or None)

    @property
    def key(self) -> str:
        return build_scope_key(self.school_id, self.district_id)

    def as_dict(self) -> dict[str, str | None]:
        return {"school_id": self.school_id, "district_id": self.district_id}


@dataclass(frozen=True)
class IncomingRow:
    """A normalized feed row, prior to validation."""

    row_index: int
    external_id: str | None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    contact_type: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, default_index: int) -> "IncomingRow":
        row_index = raw.get("row_index")
        return cls(
            row_index=int(row_index) if row_index is not None else default_index,
            external_id=_clean(raw.get("external_id")),
            email=_clean(raw.get("email")),
            first_name=_clean(raw.get("first_name")),
            last_name=_clean(raw.get("last_name")),
            contact_type=_clean(raw.get("contact_type")),
        )


@dataclass(frozen=True)
class CanonicalRecord:
    """Snapshot of a canonical directory record taken before diffing."""

    id: int
    external_id: str
    email: str
    first_name: str | None
    last_name: str | None
    contact_type: str
    is_active: bool

    @classmethod
    def from_model(cls, contact) -> "CanonicalRecord":
        return cls(
            id=contact.id,
            external_id=contact.external_id,
            email=contact.email,
            first_name=contact.first_name,
            last_name=contact.last_name,
            contact_type=contact.contact_type,
            is_active=bool(contact.is_active),
        )

    def tracked(self) -> dict[str, Any]:
        return {name: _normalize_field(name, getattr(self, name)) for name in TRACKED_FIELDS}


@dataclass(frozen=True)
class RowError:
    row_index: int
    reason: str
    message: str
    external_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = {"row_index": self.row_index, "reason": self.reason, "message": self.message}
        if self.external_id is not None:
            payload["external_id"] = self.external_id
        return payload


@dataclass(frozen=True)
class Diff:
    """Structured diff, each item keyed by ``external_id``."""

    adds: tuple[dict[str, Any], ...] = ()
    updates: tuple[dict[str, Any], ...] = ()
    deactivation_candidates: tuple[dict[str, Any], ...] = ()
    unchanged: tuple[str, ...] = ()
    row_errors: tuple[RowError, ...] = ()

    def classify(self) -> dict[str, str]:
        classification: dict[str, str] = {}
        for category, items in (
            (ADD, self.adds),
            (UPDATE, self.updates),
            (DEACTIVATE, self.deactivation_candidates),
        ):
            for item in items:
                classification[item["external_id"]] = category
        for external_id in self.unchanged:
            classification[external_id] = UNCHANGED
        return classification

    def as_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "adds": [dict(item) for item in self.adds],
            "updates": [dict(item) for item in self.updates],
            "deactivation_candidates": [dict(item) for item in self.deactivation_candidates],
        }


@dataclass(frozen=True)
class DiffStats:
    total_rows: int = 0
    valid: int = 0
    invalid: int = 0
    to_add: int = 0
    to_update: int = 0
    to_deactivate: int = 0
    unchanged: int = 0
    current_active: int = 0
    existing: int = 0
    invalid_reasons: dict[str, int] = field(default_factory=dict)
    source_hash: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_rows": self.total_rows,
            "valid": self.valid,
            "invalid": self.invalid,
            "to_add": self.to_add,
            "to_update": self.to_update,
            "to_deactivate": self.to_deactivate,
            "unchanged": self.unchanged,
            "current_active": self.current_active,
            "existing": self.existing,
            "invalid_reasons": dict(self.invalid_reasons),
            "source_hash": self.source_hash,
        }


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _normalize_field(name: str, value: Any) -> Any:
    token = _clean(value)
    if name == "email" and token is not None:
        return token.lower()
    if name == "contact_type":
        return token.lower() if token is not None else DEFAULT_CONTACT_TYPE
    return token


def _validate(row: IncomingRow) -> tuple[dict[str, Any] | None, str | None, str | None]:
    """Return (tracked_fields, reason, message); fields are None when rejected."""

    if not row.external_id:
        return None, "missing_external_id", "Row has no resolvable external_id."

    fields = {name: _normalize_field(name, getattr(row, name)) for name in TRACKED_FIELDS}
    email = fields["email"]
    if not email or not _EMAIL_PATTERN.match(email):
        return None, "invalid_email", f"Email '{row.email or ''}' is not a valid address."
    if fields["contact_type"] not in CONTACT_TYPES:
        return None, "invalid_contact_type", f"Contact type '{row.contact_type}' is not recognised."
    return fields, None, None


def _coerce_rows(incoming_rows: Iterable[IncomingRow | Mapping[str, Any]]) -> list[IncomingRow]:
    rows: list[IncomingRow] = []
    for position, raw in enumerate(incoming_rows, start=1):
        if isinstance(raw, IncomingRow):
            rows.append(raw)
        else:
            rows.append(IncomingRow.from_mapping(raw, default_index=position))
    return rows


def _source_hash(scope: Scope, valid_rows: Mapping[str, dict[str, Any]]) -> str:
    payload = {
        "scope": scope.as_dict(),
        "rows": [{"external_id": key, **valid_rows[key]} for key in sorted(valid_rows)],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_diff(
    scope: Scope,
    canonical_records: Sequence[CanonicalRecord],
    incoming_rows: Sequence[IncomingRow | Mapping[str, Any]],
    *,
    max_errors: int = MAX_ROW_ERRORS,
) -> tuple[Diff, DiffStats]:
    """
    Classify incoming rows against the canonical records of ``scope``.

    The last row for each external id wins, valid or not, and every earlier
    row for it is reported as a duplicate. When that last row is invalid the
    id is neither added nor updated, and a matching canonical record is kept
    out of the deactivation candidates.
    """

    rows = _coerce_rows(incoming_rows)
    errors: list[RowError] = []
    invalid_reasons: dict[str, int] = {}
    invalid = 0

    def _reject(row: IncomingRow, reason: str, message: str) -> None:
        nonlocal invalid
        invalid += 1
        invalid_reasons[reason] = invalid_reasons.get(reason, 0) + 1
        if len(errors) < max_errors:
            errors.append(RowError(row.row_index, reason, message, external_id=row.external_id))

    last_position: dict[str, int] = {}
    for position, row in enumerate(rows):
        if row.external_id:
            last_position[row.external_id] = position

    accepted: dict[str, tuple[IncomingRow, dict[str, Any]]] = {}
    protected_ids: set[str] = set()
    for position, row in enumerate(rows):
        winner_position = last_position.get(row.external_id) if row.external_id else None
        if winner_position is not None and winner_position != position:
            winner = rows[winner_position]
            _reject(
                row,
                "duplicate_external_id",
                f"external_id '{row.external_id}' appears again at row {winner.row_index}; the later row wins.",
            )
            continue
        fields, reason, message = _validate(row)
        if fields is None:
            if row.external_id:
                protected_ids.add(row.external_id)
            _reject(row, reason, message)
            continue
        accepted[row.external_id] = (row, fields)

    canonical_by_id = {record.external_id: record for record in canonical_records}

    adds: list[dict[str, Any]] = []
    updates: list[dict[str, Any]] = []
    unchanged: list[str] = []
    for external_id in sorted(accepted):
        row, fields = accepted[external_id]
        record = canonical_by_id.get(external_id)
        if record is None:
            adds.append({"external_id": external_id, "row_index": row.row_index, "fields": fields})
            continue
        current = record.tracked()
        changes = {
            name: {"from": current[name], "to": fields[name]}
            for name in TRACKED_FIELDS
            if current[name] != fields[name]
        }
        reactivate = not record.is_active
        if changes or reactivate:
            updates.append(
                {
                    "external_id": external_id,
                    "record_id": record.id,
                    "row_index": row.row_index,
                    "changes": changes,
                    "reactivate": reactivate,
                }
            )
        else:
            unchanged.append(external_id)

    candidates: list[dict[str, Any]] = []
    for external_id in sorted(canonical_by_id):
        if external_id in accepted:
            continue
        record = canonical_by_id[external_id]
        if record.is_active and external_id not in protected_ids:
            candidates.append(
                {
                    "external_id": external_id,
                    "record_id": record.id,
                    "email": record.email,
                    "contact_type": record.contact_type,
                }
            )
        else:
            unchanged.append(external_id)

    unchanged.sort()
    errors.sort(key=lambda error: error.row_index)
    total_rows = len(rows)
    stats = DiffStats(
        total_rows=total_rows,
        valid=total_rows - invalid,
        invalid=invalid,
        to_add=len(adds),
        to_update=len(updates),
        to_deactivate=len(candidates),
        unchanged=len(unchanged),
        current_active=sum(1 for record in canonical_records if record.is_active),
        existing=len(canonical_records),
        invalid_reasons=invalid_reasons,
        source_hash=_source_hash(scope, {key: value[1] for key, value in accepted.items()}),
    )
    diff = Diff(
        adds=tuple(adds),
        updates=tuple(updates),
        deactivation_candidates=tuple(candidates),
        unchanged=tuple(unchanged),
        row_errors=tuple(errors),
    )
    return diff, stats


__all__ = [
    "TRACKED_FIELDS",
    "CONTACT_TYPES",
    "MAX_ROW_ERRORS",
    "Scope",
    "IncomingRow",
    "CanonicalRecord",
    "RowError",
    "Diff",
    "DiffStats",
    "compute_diff",
]
