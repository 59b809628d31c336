"""Shared builders for directory tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from flask_app.models import DirectorySource, db

SCHOOL_ID = "sch-1"
DISTRICT_ID = "dist-1"


def row(external_id, email=None, *, first_name="Ada", last_name="Lovelace", contact_type="parent_guardian"):
    """Inline feed row with sensible defaults."""
    return {
        "external_id": external_id,
        "email": email or f"{external_id}@example.org",
        "first_name": first_name,
        "last_name": last_name,
        "contact_type": contact_type,
    }


def set_feed(source: DirectorySource, rows) -> None:
    source.config_json = {"rows": list(rows)}
    db.session.commit()


class FrozenClock:
    """Callable clock that tests can move forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 9, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now
