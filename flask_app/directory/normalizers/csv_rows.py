"""CSV normalizer for directory feeds.

Validates the header row against the canonical directory contract, then
streams rows into the plain mappings the diff engine consumes. Row content is
not validated here; malformed rows are reported by the diff engine.
"""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import IO, Any, Iterator, Mapping, Sequence

from flask import current_app, has_app_context

from flask_app.directory.contracts import get_required_headers, map_role_to_contact_type, resolve_headers
from flask_app.directory.errors import AdapterUnreachableError, FeedFormatError


class CSVHeaderError(FeedFormatError):
    """Raised when the header row does not meet the directory contract."""

    def __init__(self, *, missing: Sequence[str] = (), duplicates: Sequence[str] = ()) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if duplicates:
            details.append(
                "Duplicate canonical columns detected: "
                + ", ".join(sorted(duplicates))
                + ". Ensure each canonical field appears only once."
            )
        super().__init__("CSV header validation failed. " + " ".join(details))
        self.missing = tuple(missing)
        self.duplicates = tuple(duplicates)


def _validate_headers(raw_headers: Sequence[str]) -> tuple[str | None, ...]:
    canonical = resolve_headers(raw_headers)
    seen: set[str] = set()
    duplicates: list[str] = []
    for name in canonical:
        if name is None:
            continue
        if name in seen:
            duplicates.append(name)
        seen.add(name)
    missing = sorted(set(get_required_headers()) - seen)
    if missing or duplicates:
        raise CSVHeaderError(missing=missing, duplicates=duplicates)
    return canonical


def iter_directory_rows(
    handle: IO[str],
    *,
    delimiter: str = ",",
    default_contact_type: str | None = None,
) -> Iterator[dict[str, Any]]:
    """
    Yield canonical row mappings from an open CSV handle.

    ``row_index`` is the 1-based line number in the file, so the header is
    line 1 and the first data row is line 2. Blank rows are skipped. When the
    feed carries no external id column the email address stands in for it.
    """

    reader = csv.reader(handle, delimiter=delimiter)
    try:
        raw_headers = next(reader)
    except StopIteration as exc:
        raise FeedFormatError("CSV feed is empty; a header row is required.") from exc
    except csv.Error as exc:
        raise FeedFormatError(f"CSV header could not be parsed: {exc}") from exc

    canonical = _validate_headers(raw_headers)
    has_external_id = "external_id" in canonical

    try:
        for values in reader:
            if not any((value or "").strip() for value in values):
                continue
            row: dict[str, Any] = {"row_index": reader.line_num}
            for name, value in zip(canonical, values):
                if name is not None:
                    row[name] = value
            if not has_external_id:
                row["external_id"] = row.get("email")
            contact_type = map_role_to_contact_type(row.get("contact_type"))
            row["contact_type"] = contact_type or default_contact_type
            yield row
    except csv.Error as exc:
        raise FeedFormatError(f"CSV line {reader.line_num}: {exc}") from exc


def parse_directory_csv(text: str, **kwargs: Any) -> list[dict[str, Any]]:
    return list(iter_directory_rows(io.StringIO(text, newline=""), **kwargs))


def _resolve_path(raw_path: str) -> Path:
    path = Path(raw_path)
    if not path.is_absolute() and has_app_context():
        path = Path(current_app.instance_path) / path
    return path


def normalize(config: Mapping[str, Any], *, timeout: float | None = None) -> list[dict[str, Any]]:
    """
    Read a CSV feed from ``config['csv_text']`` or a file at ``config['path']``.
    """

    _ = timeout  # local reads are not time-bounded
    options = {
        "delimiter": config.get("delimiter") or ",",
        "default_contact_type": config.get("default_contact_type"),
    }
    if config.get("csv_text") is not None:
        return parse_directory_csv(str(config["csv_text"]), **options)

    raw_path = config.get("path")
    if not raw_path:
        raise FeedFormatError("CSV source requires 'path' or 'csv_text' in its configuration.")
    path = _resolve_path(str(raw_path))
    encoding = config.get("encoding") or "utf-8-sig"
    try:
        with path.open("r", encoding=encoding, newline="") as handle:
            return list(iter_directory_rows(handle, **options))
    except FileNotFoundError as exc:
        raise AdapterUnreachableError(f"CSV file not found: {path}") from exc
    except UnicodeDecodeError as exc:
        raise FeedFormatError(f"CSV file is not valid {encoding}: {exc}") from exc
