"""
Cron scheduling for directory sources.

A source is due when it has never run, or when the next cron fire after its
``last_run_at`` (evaluated in the source's timezone) is at or before now.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from flask import current_app
from sqlalchemy.orm import Session

from flask_app.directory.errors import DirectorySyncError, RunInProgressError
from flask_app.directory.utils import ensure_aware, isoformat, utcnow
from flask_app.models import DirectorySource, db

from .orchestrator import INTERNAL_ERROR, RunOrchestrator, SyncOptions

DEFAULT_BATCH_LIMIT = 25
MAX_BATCH_LIMIT = 100


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        current_app.logger.warning("Unknown schedule timezone '%s'; using UTC.", name)
        return ZoneInfo("UTC")


def next_fire_after(expression: str, after: datetime, timezone_name: str | None = None) -> datetime:
    """Return the first cron fire strictly after ``after`` as a UTC datetime."""

    local_start = ensure_aware(after).astimezone(resolve_timezone(timezone_name))
    return ensure_aware(croniter(expression, local_start).get_next(datetime))


def is_due(source: DirectorySource, now: datetime) -> bool:
    if not source.schedule_cron:
        return False
    if source.last_run_at is None:
        return True
    return next_fire_after(source.schedule_cron, source.last_run_at, source.schedule_timezone) <= now


def clamp_batch_limit(limit: int | None) -> int:
    if limit is None:
        limit = int(current_app.config.get("DIRECTORY_SCHEDULE_BATCH_LIMIT", DEFAULT_BATCH_LIMIT))
    return max(1, min(int(limit), MAX_BATCH_LIMIT))


def find_due_sources(
    *,
    limit: int | None = None,
    now: datetime | None = None,
    session: Session | None = None,
) -> list[DirectorySource]:
    session = session or db.session
    now = ensure_aware(now) or utcnow()
    resolved_limit = clamp_batch_limit(limit)
    candidates = (
        session.query(DirectorySource)
        .filter(
            DirectorySource.is_enabled.is_(True),
            DirectorySource.schedule_cron.isnot(None),
            DirectorySource.schedule_cron != "",
        )
        .order_by(DirectorySource.last_run_at.asc().nulls_first(), DirectorySource.id.asc())
        .all()
    )

    due: list[DirectorySource] = []
    for source in candidates:
        if not croniter.is_valid(source.schedule_cron):
            current_app.logger.warning(
                "Directory source %s has an invalid schedule '%s'; skipping.",
                source.id,
                source.schedule_cron,
                extra={"directory_source_id": source.id},
            )
            continue
        if is_due(source, now):
            due.append(source)
        if len(due) >= resolved_limit:
            break
    return due


def sync_due_sources(
    *,
    limit: int | None = None,
    now: datetime | None = None,
    orchestrator: RunOrchestrator | None = None,
) -> dict[str, Any]:
    """Sync every due source once; one source failing does not stop the batch."""

    orchestrator = orchestrator or RunOrchestrator()
    now = ensure_aware(now) or utcnow()
    summary: dict[str, Any] = {"processed": 0, "completed": 0, "failed": 0, "skipped": 0, "results": []}

    for source in find_due_sources(limit=limit, now=now, session=orchestrator.session):
        source_id = source.id
        options = SyncOptions(deactivate_missing=bool(source.deactivate_missing_default), dry_run=False)
        summary["processed"] += 1
        try:
            result = orchestrator.sync_source(source_id, options)
        except RunInProgressError as exc:
            summary["skipped"] += 1
            summary["results"].append({"source_id": source_id, "status": "skipped", "reason": exc.reason})
            continue
        except DirectorySyncError as exc:
            summary["failed"] += 1
            summary["results"].append(
                {"source_id": source_id, "status": "failed", "reason": exc.reason, "error": str(exc)}
            )
            continue
        except Exception as exc:  # noqa: BLE001 - the run is already marked failed
            current_app.logger.exception(
                "Scheduled sync of directory source %s failed",
                source_id,
                extra={"directory_source_id": source_id},
            )
            summary["failed"] += 1
            summary["results"].append(
                {"source_id": source_id, "status": "failed", "reason": INTERNAL_ERROR, "error": str(exc)}
            )
            continue
        summary["completed"] += 1
        summary["results"].append({"source_id": source_id, "status": "completed", **result.as_dict()})

    current_app.logger.info(
        "Scheduled directory sync processed %s source(s) at %s",
        summary["processed"],
        isoformat(now),
        extra={
            "directory_schedule_completed": summary["completed"],
            "directory_schedule_failed": summary["failed"],
            "directory_schedule_skipped": summary["skipped"],
        },
    )
    return summary
