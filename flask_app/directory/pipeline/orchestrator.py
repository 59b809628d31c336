"""
Run orchestration for directory sources.

``enqueue_run`` claims the single active-run slot of a source and records a
queued ``SourceRun``; ``execute_run`` moves it to running, invokes the
normalizer, diffs against a fresh canonical snapshot and persists the preview
(and, for destructive diffs, a pending approval) in one commit. Any failure
rolls the partial work back and leaves the run failed with a reason code.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Sequence

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from flask_app.directory.errors import (
    DirectorySyncError,
    RunInProgressError,
    RunNotFoundError,
    SourceDisabledError,
    SourceNotFoundError,
)
from flask_app.directory.metrics import record_run
from flask_app.directory.registry import NormalizerDescriptor, get_normalizer, get_normalizer_registry
from flask_app.directory.utils import isoformat, utcnow
from flask_app.models import DirectoryContact, DirectoryPreview, DirectorySource, SourceRun, SourceRunStatus, db

from . import audit as audit_actions
from .approvals import ApprovalGate
from .audit import AuditSink
from .diff import CanonicalRecord, Scope, compute_diff

INTERNAL_ERROR = "internal_error"
STALE_RUN_REASON = "timeout"


@dataclass(frozen=True)
class SyncOptions:
    deactivate_missing: bool = False
    dry_run: bool = False


@dataclass
class SourceRunResult:
    """Outcome of a run, as returned to API callers."""

    run_id: int
    status: str
    preview_id: int | None = None
    requires_approval: bool = False
    approval_id: int | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    error_reason: str | None = None

    @classmethod
    def from_run(cls, run: SourceRun) -> "SourceRunResult":
        preview = run.preview
        return cls(
            run_id=run.id,
            status=run.status.value,
            preview_id=preview.id if preview else None,
            requires_approval=bool(preview.requires_approval) if preview else False,
            approval_id=preview.approval_id if preview else None,
            stats=dict(run.stats_json or {}),
            job_id=run.job_id,
            error_reason=run.error_reason,
        )

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "run_id": self.run_id,
            "preview_id": self.preview_id,
            "requires_approval": self.requires_approval,
            "approval_id": self.approval_id,
            "stats": dict(self.stats),
            "status": self.status,
        }
        if self.job_id:
            payload["job_id"] = self.job_id
        if self.error_reason:
            payload["error_reason"] = self.error_reason
        return payload


def requires_approval(*, candidates: int, deactivate_missing: bool, dry_run: bool) -> bool:
    return candidates > 0 and deactivate_missing and not dry_run


def build_run_stats(diff_stats: Mapping[str, Any], options: SyncOptions) -> dict[str, Any]:
    stats = dict(diff_stats)
    stats.update(
        {
            "upserted": 0,
            "deactivated": stats.get("to_deactivate", 0) if options.deactivate_missing else 0,
            "dry_run": options.dry_run,
            "deactivate_missing": options.deactivate_missing,
        }
    )
    return stats


class RunOrchestrator:
    """Drives a ``SourceRun`` from queued to a terminal state."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        audit: AuditSink | None = None,
        approvals: ApprovalGate | None = None,
        registry: Mapping[str, NormalizerDescriptor] | None = None,
        enabled_normalizers: Sequence[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditSink(self.session)
        self.approvals = approvals or ApprovalGate(self.session, audit=self.audit, clock=clock)
        self.registry = registry or get_normalizer_registry()
        if enabled_normalizers is None:
            enabled_normalizers = tuple(current_app.config.get("DIRECTORY_NORMALIZERS", ()))
        self.enabled_normalizers = tuple(enabled_normalizers)
        self.clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def sync_source(
        self,
        source_id: int,
        options: SyncOptions | None = None,
        *,
        actor_user_id: int | None = None,
    ) -> SourceRunResult:
        """Enqueue and execute a run inline."""

        run = self.enqueue_run(source_id, options or SyncOptions(), actor_user_id=actor_user_id)
        return self.execute_run(run.id)

    def enqueue_run(
        self,
        source_id: int,
        options: SyncOptions,
        *,
        actor_user_id: int | None = None,
    ) -> SourceRun:
        source = self.session.get(DirectorySource, source_id)
        if source is None:
            raise SourceNotFoundError(f"Directory source {source_id} not found.", source_id=source_id)
        if not source.is_enabled:
            raise SourceDisabledError(f"Directory source {source_id} is disabled.", source_id=source_id)

        self.recover_stale_runs(source_id=source.id)

        run = SourceRun(
            source_id=source.id,
            status=SourceRunStatus.QUEUED,
            active_source_id=source.id,
            dry_run=bool(options.dry_run),
            deactivate_missing=bool(options.deactivate_missing),
            triggered_by_user_id=actor_user_id,
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            active = self.session.query(SourceRun).filter(SourceRun.active_source_id == source.id).first()
            raise RunInProgressError(source.id, active_run_id=active.id if active else None) from None

        current_app.logger.info(
            "Directory run %s queued for source %s",
            run.id,
            source.id,
            extra={
                "directory_run_id": run.id,
                "directory_source_id": source.id,
                "directory_dry_run": run.dry_run,
                "directory_deactivate_missing": run.deactivate_missing,
            },
        )
        return run

    def execute_run(self, run_id: int) -> SourceRunResult:
        run = self.get_run(run_id)
        if run.status.is_terminal:
            return SourceRunResult.from_run(run)

        now = self.clock()
        claimed = self.session.execute(
            update(SourceRun)
            .where(SourceRun.id == run_id, SourceRun.status == SourceRunStatus.QUEUED)
            .values(status=SourceRunStatus.RUNNING, started_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            self.session.refresh(run)
            if run.status.is_terminal:
                return SourceRunResult.from_run(run)
            raise RunInProgressError(run.source_id, active_run_id=run.id)
        self.session.commit()

        started = time.monotonic()
        try:
            result = self._run(run_id)
        except DirectorySyncError as exc:
            self._fail(run_id, exc.reason, str(exc), started=started)
            raise
        except Exception as exc:
            current_app.logger.exception(
                "Directory run %s failed unexpectedly",
                run_id,
                extra={"directory_run_id": run_id},
            )
            self._fail(run_id, INTERNAL_ERROR, str(exc) or exc.__class__.__name__, started=started)
            raise

        if result.status == SourceRunStatus.SUCCEEDED.value:
            record_run(status="succeeded", duration_seconds=time.monotonic() - started)
        return result

    def recover_stale_runs(self, *, source_id: int | None = None) -> list[int]:
        """
        Fail runs that have held the active slot past the stale threshold.
        """

        stale_after = int(current_app.config.get("DIRECTORY_RUN_STALE_AFTER_SECONDS", 3600))
        now = self.clock()
        cutoff = now - timedelta(seconds=stale_after)
        query = self.session.query(SourceRun).filter(
            SourceRun.active_source_id.isnot(None),
            SourceRun.created_at < cutoff,
        )
        if source_id is not None:
            query = query.filter(SourceRun.source_id == source_id)

        recovered: list[int] = []
        for run in query.all():
            if self._mark_failed(
                run,
                reason=STALE_RUN_REASON,
                message=f"Run did not finish within {stale_after}s; marked failed.",
                now=now,
            ):
                recovered.append(run.id)
        if recovered:
            self.session.commit()
            current_app.logger.warning(
                "Recovered %s stale directory run(s)",
                len(recovered),
                extra={"directory_run_ids": recovered, "directory_source_id": source_id},
            )
        return recovered

    def fail_run(self, run_id: int, *, reason: str, message: str) -> None:
        """Fail a queued run that will never execute (e.g. dispatch failed)."""
        self._fail(run_id, reason, message, started=time.monotonic())

    def attach_job(self, run_id: int, job_id: str) -> SourceRun:
        run = self.get_run(run_id)
        run.job_id = job_id
        self.session.commit()
        return run

    def get_run(self, run_id: int) -> SourceRun:
        run = self.session.get(SourceRun, run_id)
        if run is None:
            raise RunNotFoundError(f"Source run {run_id} not found.", run_id=run_id)
        return run

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _run(self, run_id: int) -> SourceRunResult:
        run = self.get_run(run_id)
        source: DirectorySource = run.source
        options = SyncOptions(deactivate_missing=run.deactivate_missing, dry_run=run.dry_run)

        descriptor = get_normalizer(source.source_type, self.enabled_normalizers, self.registry)
        timeout = source.timeout_seconds or current_app.config.get("DIRECTORY_FETCH_TIMEOUT_SECONDS", 60)
        rows = descriptor.normalize(dict(source.config_json or {}), timeout=float(timeout))

        scope = Scope.coerce(school_id=source.school_id, district_id=source.district_id)
        snapshot = [
            CanonicalRecord.from_model(contact)
            for contact in self.session.query(DirectoryContact).filter(DirectoryContact.scope_key == scope.key).all()
        ]
        diff, diff_stats = compute_diff(
            scope,
            snapshot,
            rows,
            max_errors=int(current_app.config.get("DIRECTORY_MAX_RUN_ERRORS", 50)),
        )

        now = self.clock()
        stats = build_run_stats(diff_stats.as_dict(), options)
        gated = requires_approval(
            candidates=len(diff.deactivation_candidates),
            deactivate_missing=options.deactivate_missing,
            dry_run=options.dry_run,
        )
        finished = self.session.execute(
            update(SourceRun)
            .where(SourceRun.id == run.id, SourceRun.status == SourceRunStatus.RUNNING)
            .values(
                status=SourceRunStatus.SUCCEEDED,
                finished_at=now,
                active_source_id=None,
                stats_json=stats,
                errors_json=[error.as_dict() for error in diff.row_errors],
            )
            .execution_options(synchronize_session=False)
        )
        if finished.rowcount != 1:
            return self._abandon(run_id)

        ttl_days = int(current_app.config.get("DIRECTORY_PREVIEW_TTL_DAYS", 14))
        preview = DirectoryPreview(
            source_id=source.id,
            source_run_id=run.id,
            school_id=source.school_id,
            district_id=source.district_id,
            diff_json=diff.as_dict(),
            stats_json=stats,
            source_hash=diff_stats.source_hash,
            requires_approval=gated,
            deactivate_missing=options.deactivate_missing,
            dry_run=options.dry_run,
            expires_at=now + timedelta(days=ttl_days),
        )
        self.session.add(preview)
        self.session.flush()

        approval = None
        if gated:
            approval = self.approvals.request(
                preview=preview,
                run=run,
                actor_user_id=run.triggered_by_user_id,
                now=now,
            )

        source.last_run_at = now

        self.audit.record(
            action=audit_actions.SOURCE_SYNC_COMPLETED,
            entity_type="source_run",
            entity_id=run.id,
            actor_user_id=run.triggered_by_user_id,
            metadata={
                "source_id": source.id,
                "preview_id": preview.id,
                "approval_id": approval.id if approval else None,
                "requires_approval": gated,
                "dry_run": options.dry_run,
                "to_add": diff_stats.to_add,
                "to_update": diff_stats.to_update,
                "to_deactivate": diff_stats.to_deactivate,
                "invalid": diff_stats.invalid,
            },
        )
        self.session.commit()

        current_app.logger.info(
            "Directory run %s succeeded (adds=%s updates=%s deactivations=%s invalid=%s)",
            run.id,
            diff_stats.to_add,
            diff_stats.to_update,
            diff_stats.to_deactivate,
            diff_stats.invalid,
            extra={
                "directory_run_id": run.id,
                "directory_source_id": source.id,
                "directory_preview_id": preview.id,
                "directory_approval_id": approval.id if approval else None,
            },
        )
        return SourceRunResult(
            run_id=run.id,
            status=SourceRunStatus.SUCCEEDED.value,
            preview_id=preview.id,
            requires_approval=gated,
            approval_id=approval.id if approval else None,
            stats=dict(stats),
            job_id=run.job_id,
        )

    def _abandon(self, run_id: int) -> SourceRunResult:
        """Drop this run's work after another caller already finished it (e.g. stale recovery)."""
        self.session.rollback()
        run = self.get_run(run_id)
        self.session.refresh(run)
        current_app.logger.warning(
            "Directory run %s was finished elsewhere as %s; discarding its results",
            run_id,
            run.status.value,
            extra={"directory_run_id": run_id, "directory_error_reason": run.error_reason},
        )
        return SourceRunResult.from_run(run)

    def _fail(self, run_id: int, reason: str, message: str, *, started: float) -> None:
        self.session.rollback()
        try:
            run = self.get_run(run_id)
            self._mark_failed(run, reason=reason, message=message, now=self.clock())
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.exception(
                "Could not record failure for directory run %s",
                run_id,
                extra={"directory_run_id": run_id},
            )
        record_run(status="failed", duration_seconds=time.monotonic() - started, reason=reason)
        current_app.logger.warning(
            "Directory run %s failed (%s): %s",
            run_id,
            reason,
            message,
            extra={"directory_run_id": run_id, "directory_error_reason": reason},
        )

    def _mark_failed(self, run: SourceRun, *, reason: str, message: str, now: datetime) -> bool:
        """Move a queued or running ``run`` to failed; False when it already finished."""

        failed = self.session.execute(
            update(SourceRun)
            .where(
                SourceRun.id == run.id,
                SourceRun.status.in_((SourceRunStatus.QUEUED, SourceRunStatus.RUNNING)),
            )
            .values(
                status=SourceRunStatus.FAILED,
                finished_at=now,
                active_source_id=None,
                error_reason=reason,
                error_summary=message[:2000],
            )
            .execution_options(synchronize_session=False)
        )
        if failed.rowcount != 1:
            return False
        if run.source is not None:
            run.source.last_run_at = now
        self.audit.record(
            action=audit_actions.SOURCE_SYNC_FAILED,
            entity_type="source_run",
            entity_id=run.id,
            actor_user_id=run.triggered_by_user_id,
            metadata={"source_id": run.source_id, "reason": reason, "message": message[:500]},
        )


def serialize_run(run: SourceRun) -> dict[str, Any]:
    preview = run.preview
    return {
        "id": run.id,
        "source_id": run.source_id,
        "status": run.status.value,
        "dry_run": run.dry_run,
        "deactivate_missing": run.deactivate_missing,
        "triggered_by_user_id": run.triggered_by_user_id,
        "job_id": run.job_id,
        "started_at": isoformat(run.started_at),
        "finished_at": isoformat(run.finished_at),
        "stats": dict(run.stats_json or {}),
        "errors": list(run.errors_json or []),
        "error_reason": run.error_reason,
        "error_summary": run.error_summary,
        "preview_id": preview.id if preview else None,
        "approval_id": preview.approval_id if preview else None,
        "requires_approval": bool(preview.requires_approval) if preview else False,
    }
