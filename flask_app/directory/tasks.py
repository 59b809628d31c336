"""
Directory Celery tasks.

Tasks are thin wrappers over the pipeline services; they run inside a Flask
app context (see ``celery_app.FlaskContextTask``) and return JSON-safe dicts.
"""

from __future__ import annotations

from typing import Any

from celery import shared_task

from flask_app.directory.utils import utcnow
from flask_app.directory.pipeline.apply import ApplyService
from flask_app.directory.pipeline.orchestrator import RunOrchestrator
from flask_app.directory.pipeline.scheduling import sync_due_sources as run_due_sources


@shared_task(name="directory.healthcheck", bind=True)
def directory_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="directory.sync_source", bind=True)
def sync_source_task(self, *, run_id: int) -> dict[str, Any]:
    """Execute a queued source run."""
    return RunOrchestrator().execute_run(run_id).as_dict()


@shared_task(name="directory.apply_approval", bind=True)
def apply_approval_task(self, *, approval_id: int, actor_user_id: int | None = None) -> dict[str, Any]:
    result = ApplyService().apply(approval_id, actor_user_id=actor_user_id, job_id=self.request.id)
    return {
        "ok": True,
        "approval_id": approval_id,
        "job_id": self.request.id,
        "preview_id": result.preview_id,
        "result": result.as_dict(),
    }


@shared_task(name="directory.sync_due_sources", bind=True)
def sync_due_sources_task(self, *, limit: int | None = None) -> dict[str, Any]:
    """Beat-friendly entry point for scheduled syncs."""
    return run_due_sources(limit=limit)
