"""
Aggregate operational counts for one tenant scope.

Every section filters on the `school_id` and `district_id` columns that the
scope sets, so a district-only scope rolls up all of its schools.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from flask_app.directory.utils import isoformat
from flask_app.models import (
    ApprovalStatus,
    DeactivationApproval,
    DirectoryContact,
    DirectoryPreview,
    DirectorySource,
    SourceRun,
    SourceRunStatus,
    db,
)

from .diff import Scope

RECENT_RUNS_LIMIT = 10
PENDING_APPROVALS_LIMIT = 25


def _scoped(query, model, scope: Scope):
    if scope.school_id:
        query = query.filter(model.school_id == scope.school_id)
    if scope.district_id:
        query = query.filter(model.district_id == scope.district_id)
    return query


def _pct(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 1)


class OpsSummaryService:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def build(self, scope: Scope) -> dict[str, Any]:
        sources = _scoped(self.session.query(DirectorySource), DirectorySource, scope).order_by(DirectorySource.id).all()
        source_ids = [source.id for source in sources]
        return {
            "scope": scope.as_dict(),
            "sources": self._sources(sources),
            "runs": self._runs(source_ids),
            "approvals": self._approvals(scope),
            "directory": self._directory(scope),
            "applied_deactivations": self._applied_deactivations(scope),
        }

    def _sources(self, sources: list[DirectorySource]) -> dict[str, Any]:
        rows = []
        for source in sources:
            last_run = (
                self.session.query(SourceRun)
                .filter(SourceRun.source_id == source.id)
                .order_by(SourceRun.id.desc())
                .first()
            )
            rows.append(
                {
                    "id": source.id,
                    "name": source.name,
                    "source_type": source.source_type,
                    "is_enabled": source.is_enabled,
                    "last_run_at": isoformat(source.last_run_at),
                    "last_run": (
                        {
                            "id": last_run.id,
                            "status": last_run.status.value,
                            "stats": dict(last_run.stats_json or {}),
                            "finished_at": isoformat(last_run.finished_at),
                        }
                        if last_run
                        else None
                    ),
                }
            )
        return {
            "total": len(sources),
            "enabled": sum(1 for source in sources if source.is_enabled),
            "items": rows,
        }

    def _runs(self, source_ids: list[int]) -> dict[str, Any]:
        counts = {status.value: 0 for status in SourceRunStatus}
        recent: list[dict[str, Any]] = []
        if source_ids:
            for status, total in (
                self.session.query(SourceRun.status, func.count(SourceRun.id))
                .filter(SourceRun.source_id.in_(source_ids))
                .group_by(SourceRun.status)
                .all()
            ):
                counts[status.value] = total
            for run in (
                self.session.query(SourceRun)
                .filter(SourceRun.source_id.in_(source_ids))
                .order_by(SourceRun.id.desc())
                .limit(RECENT_RUNS_LIMIT)
                .all()
            ):
                recent.append(
                    {
                        "id": run.id,
                        "source_id": run.source_id,
                        "status": run.status.value,
                        "dry_run": run.dry_run,
                        "error_reason": run.error_reason,
                        "finished_at": isoformat(run.finished_at),
                    }
                )
        return {"counts": counts, "recent": recent}

    def _approvals(self, scope: Scope) -> dict[str, Any]:
        counts = {status.value: 0 for status in ApprovalStatus}
        grouped = _scoped(
            self.session.query(DeactivationApproval.status, func.count(DeactivationApproval.id)),
            DeactivationApproval,
            scope,
        ).group_by(DeactivationApproval.status)
        for status, total in grouped.all():
            counts[status.value] = total

        pending = []
        for approval in (
            _scoped(self.session.query(DeactivationApproval), DeactivationApproval, scope)
            .filter(DeactivationApproval.status == ApprovalStatus.PENDING)
            .order_by(DeactivationApproval.requested_at.desc(), DeactivationApproval.id.desc())
            .limit(PENDING_APPROVALS_LIMIT)
            .all()
        ):
            stats = approval.stats_json or {}
            to_deactivate = int(stats.get("to_deactivate") or 0)
            current_active = int(stats.get("current_active") or 0)
            pending.append(
                {
                    "id": approval.id,
                    "source_id": approval.source_id,
                    "preview_id": approval.preview_id,
                    "requested_at": isoformat(approval.requested_at),
                    "expires_at": isoformat(approval.expires_at),
                    "to_deactivate": to_deactivate,
                    "to_deactivate_pct": _pct(to_deactivate, current_active),
                }
            )
        return {"counts": counts, "pending": pending}

    def _directory(self, scope: Scope) -> dict[str, Any]:
        contacts = _scoped(self.session.query(func.count(DirectoryContact.id)), DirectoryContact, scope)
        active = contacts.filter(DirectoryContact.is_active.is_(True)).scalar()
        inactive = contacts.filter(DirectoryContact.is_active.is_(False)).scalar()
        last_applied = (
            self._applied_previews(scope).order_by(DirectoryPreview.applied_at.desc(), DirectoryPreview.id.desc()).first()
        )
        last_change_counts = None
        if last_applied is not None:
            counts = (last_applied.apply_result_json or {}).get("counts") or {}
            stats = last_applied.stats_json or {}
            last_change_counts = {
                "added": int(counts.get("added") or 0),
                "updated": int(counts.get("updated") or 0) + int(counts.get("reactivated") or 0),
                "deactivated": int(counts.get("deactivated") or 0),
                "invalid": int(stats.get("invalid") or 0),
                "applied_at": isoformat(last_applied.applied_at),
            }
        return {"active": active or 0, "inactive": inactive or 0, "last_change_counts": last_change_counts}

    def _applied_previews(self, scope: Scope):
        return _scoped(self.session.query(DirectoryPreview), DirectoryPreview, scope).filter(
            DirectoryPreview.applied_at.isnot(None)
        )

    def _applied_deactivations(self, scope: Scope) -> int:
        total = 0
        for preview in self._applied_previews(scope).all():
            counts = (preview.apply_result_json or {}).get("counts") or {}
            total += int(counts.get("deactivated") or 0)
        return total
