"""
Python entry points for directory reconciliation.

The HTTP blueprint, the CLI and Celery tasks all funnel through these
functions. Each returns plain dicts; failures raise ``DirectorySyncError``
subclasses carrying a stable ``reason`` code.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping

from flask import current_app

from flask_app.models import ApprovalStatus, DirectorySource, db

from .celery_app import get_celery_app
from .errors import (
    ApprovalClosedError,
    ApprovalNotApprovedError,
    DirectorySyncError,
    PreviewNotFoundError,
    WorkerUnavailableError,
)
from .pipeline.apply import ApplyService
from .pipeline.approvals import ApprovalGate, serialize_approval, serialize_preview
from .pipeline.audit import AuditSink
from .pipeline.diff import Scope
from .pipeline.ops_summary import OpsSummaryService
from .pipeline.orchestrator import RunOrchestrator, SourceRunResult, SyncOptions, serialize_run
from .pipeline.scheduling import sync_due_sources as _sync_due_sources
from .utils import isoformat

SYNC_TASK_NAME = "directory.sync_source"
APPLY_TASK_NAME = "directory.apply_approval"


def resolve_scope(scope: Scope | Mapping[str, Any] | None = None, **kwargs: Any) -> Scope:
    """Accept a ``Scope`` or a mapping with ``school_id``/``district_id``."""

    if isinstance(scope, Scope):
        return scope
    values = dict(scope or {})
    values.update({key: value for key, value in kwargs.items() if value is not None})
    return Scope.coerce(school_id=values.get("school_id"), district_id=values.get("district_id"))


def worker_enabled() -> bool:
    return bool(current_app.config.get("DIRECTORY_WORKER_ENABLED", False))


def _dispatch(task_name: str, *, task_id: str, kwargs: Mapping[str, Any]):
    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(task_name) if celery_app is not None else None
    if task is None:
        raise WorkerUnavailableError(f"Celery task '{task_name}' is not available.")
    return task.apply_async(kwargs=dict(kwargs), task_id=task_id)


def serialize_source(source: DirectorySource) -> dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "school_id": source.school_id,
        "district_id": source.district_id,
        "source_type": source.source_type,
        "schedule_cron": source.schedule_cron,
        "schedule_timezone": source.schedule_timezone,
        "deactivate_missing_default": source.deactivate_missing_default,
        "is_enabled": source.is_enabled,
        "last_run_at": isoformat(source.last_run_at),
    }


def list_sources(scope: Scope | Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
    query = db.session.query(DirectorySource)
    if scope is not None:
        resolved = resolve_scope(scope)
        if resolved.school_id:
            query = query.filter(DirectorySource.school_id == resolved.school_id)
        if resolved.district_id:
            query = query.filter(DirectorySource.district_id == resolved.district_id)
    return [serialize_source(source) for source in query.order_by(DirectorySource.id).all()]


def sync_source(
    source_id: int,
    *,
    deactivate_missing: bool = False,
    dry_run: bool = False,
    actor_user_id: int | None = None,
    run_async: bool | None = None,
) -> dict[str, Any]:
    """
    Run a source sync.

    Inline by default; when the worker is enabled the run is queued and the
    Celery task id is returned as ``job_id``.
    """

    orchestrator = RunOrchestrator()
    options = SyncOptions(deactivate_missing=bool(deactivate_missing), dry_run=bool(dry_run))
    if run_async is None:
        run_async = worker_enabled()
    if not run_async:
        return orchestrator.sync_source(source_id, options, actor_user_id=actor_user_id).as_dict()

    run = orchestrator.enqueue_run(source_id, options, actor_user_id=actor_user_id)
    run_id = run.id
    job_id = str(uuid.uuid4())
    orchestrator.attach_job(run_id, job_id)
    try:
        _dispatch(SYNC_TASK_NAME, task_id=job_id, kwargs={"run_id": run_id})
    except WorkerUnavailableError as exc:
        orchestrator.fail_run(run_id, reason=exc.reason, message=str(exc))
        raise
    except DirectorySyncError:
        raise
    except Exception as exc:
        current_app.logger.exception(
            "Failed to dispatch directory run %s",
            run_id,
            extra={"directory_run_id": run_id},
        )
        orchestrator.fail_run(run_id, reason=WorkerUnavailableError.reason, message=str(exc))
        raise WorkerUnavailableError(f"Could not queue run {run_id}: {exc}", run_id=run_id) from exc

    run = orchestrator.get_run(run_id)
    db.session.refresh(run)
    result = SourceRunResult.from_run(run)
    result.job_id = job_id
    return result.as_dict()


def get_run(run_id: int) -> dict[str, Any]:
    return serialize_run(RunOrchestrator().get_run(run_id))


def list_approvals(
    scope: Scope | Mapping[str, Any],
    *,
    status: str | None = "pending",
    limit: int | None = None,
) -> list[dict[str, Any]]:
    if limit is None:
        limit = current_app.config.get("DIRECTORY_APPROVALS_LIST_LIMIT", 50)
    approvals = ApprovalGate().list_approvals(resolve_scope(scope), status=status, limit=limit)
    return [serialize_approval(approval) for approval in approvals]


def get_approval(approval_id: int) -> dict[str, Any]:
    approval = ApprovalGate().get_approval(approval_id)
    payload = serialize_approval(approval)
    preview = approval.preview
    sample_limit = int(current_app.config.get("DIRECTORY_DIFF_SAMPLE_LIMIT", 200))
    payload["preview"] = serialize_preview(preview, sample_limit=sample_limit) if preview else None
    payload["history"] = [entry.to_dict() for entry in AuditSink().history("approval", approval.id)]
    return payload


def approve(approval_id: int, *, actor_user_id: int | None, reason: str | None = None) -> dict[str, Any]:
    approval = ApprovalGate().approve(approval_id, actor_user_id=actor_user_id, reason=reason)
    return {"ok": True, "approval_id": approval.id, "status": approval.status.value}


def reject(approval_id: int, *, actor_user_id: int | None, reason: str) -> dict[str, Any]:
    approval = ApprovalGate().reject(approval_id, actor_user_id=actor_user_id, reason=reason)
    return {"ok": True, "approval_id": approval.id, "status": approval.status.value}


def apply(approval_id: int, *, actor_user_id: int | None = None, job_id: str | None = None) -> dict[str, Any]:
    result = ApplyService().apply(approval_id, actor_user_id=actor_user_id, job_id=job_id)
    return {
        "ok": True,
        "approval_id": approval_id,
        "job_id": result.job_id,
        "preview_id": result.preview_id,
        "result": result.as_dict(),
    }


def enqueue_apply(approval_id: int, *, actor_user_id: int | None = None) -> dict[str, Any]:
    """
    Queue an apply on the worker after checking the guards that can fail fast.
    """

    gate = ApprovalGate()
    approval = gate.load(approval_id)
    gate.check_not_expired(approval)
    preview = approval.preview
    if preview is None:
        raise PreviewNotFoundError(f"Preview {approval.preview_id} not found.", preview_id=approval.preview_id)
    if preview.applied_at is None:
        if approval.status == ApprovalStatus.PENDING:
            raise ApprovalNotApprovedError(f"Approval {approval.id} has not been approved yet.", approval_id=approval.id)
        if approval.status != ApprovalStatus.APPROVED:
            raise ApprovalClosedError(
                f"Approval {approval.id} is {approval.status.value}; nothing to apply.",
                approval_id=approval.id,
                status=approval.status.value,
            )

    job_id = str(uuid.uuid4())
    try:
        _dispatch(APPLY_TASK_NAME, task_id=job_id, kwargs={"approval_id": approval_id, "actor_user_id": actor_user_id})
    except DirectorySyncError:
        raise
    except Exception as exc:
        current_app.logger.exception(
            "Failed to dispatch apply for approval %s",
            approval_id,
            extra={"directory_approval_id": approval_id},
        )
        raise WorkerUnavailableError(f"Could not queue apply for approval {approval_id}: {exc}") from exc
    return {"ok": True, "approval_id": approval_id, "job_id": job_id, "preview_id": preview.id, "status": "queued"}


def apply_preview(preview_id: int, *, actor_user_id: int | None = None) -> dict[str, Any]:
    result = ApplyService().apply_preview(preview_id, actor_user_id=actor_user_id)
    return {"ok": True, "preview_id": preview_id, "result": result.as_dict()}


def get_ops_summary(scope: Scope | Mapping[str, Any]) -> dict[str, Any]:
    return OpsSummaryService().build(resolve_scope(scope))


def sync_due_sources(*, limit: int | None = None, now: datetime | None = None) -> dict[str, Any]:
    return _sync_due_sources(limit=limit, now=now)


__all__ = [
    "resolve_scope",
    "list_sources",
    "sync_source",
    "get_run",
    "list_approvals",
    "get_approval",
    "approve",
    "reject",
    "apply",
    "enqueue_apply",
    "apply_preview",
    "get_ops_summary",
    "sync_due_sources",
]
