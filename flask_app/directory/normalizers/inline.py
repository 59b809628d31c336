"""Inline normalizer: rows stored directly on the source configuration."""

from __future__ import annotations

from typing import Any, Mapping

from flask_app.directory.contracts import map_role_to_contact_type
from flask_app.directory.errors import FeedFormatError


def normalize(config: Mapping[str, Any], *, timeout: float | None = None) -> list[dict[str, Any]]:
    _ = timeout
    rows = config.get("rows")
    if not isinstance(rows, list):
        raise FeedFormatError("Inline source requires a 'rows' list in its configuration.")

    normalized: list[dict[str, Any]] = []
    for index, raw in enumerate(rows, start=1):
        if not isinstance(raw, Mapping):
            raise FeedFormatError(f"Inline row {index} is not an object.")
        row = dict(raw)
        row.setdefault("row_index", index)
        if config.get("map_roles") and row.get("contact_type"):
            row["contact_type"] = map_role_to_contact_type(row["contact_type"])
        normalized.append(row)
    return normalized
