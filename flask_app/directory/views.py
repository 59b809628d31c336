"""
Directory blueprint: JSON endpoints for sources, runs, approvals and apply.

Every endpoint except ``/health`` requires a Flask-Login session with a
directory admin role whose tenant scope covers the record being touched.
"""

from __future__ import annotations

import time
from http import HTTPStatus
from typing import Any, Callable

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from config.monitoring import DirectoryMonitoring
from flask_app.models import DeactivationApproval, DirectoryPreview, DirectorySource, SourceRun, db
from flask_app.utils.directory import is_directory_enabled
from flask_app.utils.permissions import default_scope_for, is_directory_admin, user_can_access_scope

from . import api
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import (
    ApprovalNotFoundError,
    DirectorySyncError,
    PreviewNotFoundError,
    RunNotFoundError,
    SourceNotFoundError,
)

directory_blueprint = Blueprint("directory", __name__, url_prefix="/directory")


def _json_error(message: str, status: HTTPStatus, *, reason: str | None = None):
    payload: dict[str, Any] = {"error": message}
    if reason:
        payload["reason"] = reason
    return jsonify(payload), status


def _error_response(exc: DirectorySyncError):
    return jsonify(exc.as_dict()), exc.http_status


def _ensure_access():
    if not is_directory_enabled(current_app):
        return _json_error("Directory sync is disabled.", HTTPStatus.NOT_FOUND, reason="disabled")
    if not current_user.is_authenticated:
        return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED, reason="unauthenticated")
    if not is_directory_admin(current_user):
        return _json_error("Directory admin role required.", HTTPStatus.FORBIDDEN, reason="forbidden")
    return None


def _forbidden_scope():
    return _json_error("Record is outside your tenant scope.", HTTPStatus.FORBIDDEN, reason="forbidden_scope")


def _in_scope(record) -> bool:
    return user_can_access_scope(current_user, school_id=record.school_id, district_id=record.district_id)


def _request_scope(*, required: bool) -> dict[str, Any]:
    """Scope from query args, falling back to the caller's own assignment."""

    school_id = (request.args.get("school_id") or "").strip() or None
    district_id = (request.args.get("district_id") or "").strip() or None
    if not school_id and not district_id:
        fallback = default_scope_for(current_user)
        school_id = fallback.get("school_id")
        district_id = fallback.get("district_id")
    if required and not school_id and not district_id:
        raise ValueError("school_id or district_id is required.")
    return {"school_id": school_id, "district_id": district_id}


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _load(model, record_id: int, error_cls: type[DirectorySyncError], label: str):
    record = db.session.get(model, record_id)
    if record is None:
        raise error_cls(f"{label} {record_id} not found.")
    return record


def _execute(endpoint: str, handler: Callable[[], tuple[Any, int]]):
    """Run ``handler`` translating pipeline errors and recording request metrics."""

    start_time = time.perf_counter()
    try:
        body, status = handler()
    except DirectorySyncError as exc:
        DirectoryMonitoring.record_request(
            endpoint=endpoint, duration_seconds=time.perf_counter() - start_time, status=exc.reason
        )
        return _error_response(exc)
    except ValueError as exc:
        DirectoryMonitoring.record_request(
            endpoint=endpoint, duration_seconds=time.perf_counter() - start_time, status="invalid_request"
        )
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST, reason="invalid_request")
    except Exception as exc:  # pragma: no cover - unexpected failures
        current_app.logger.exception("Directory endpoint %s failed.", endpoint, exc_info=exc)
        DirectoryMonitoring.record_request(
            endpoint=endpoint, duration_seconds=time.perf_counter() - start_time, status="error"
        )
        return _json_error("Internal error.", HTTPStatus.INTERNAL_SERVER_ERROR, reason="internal_error")

    DirectoryMonitoring.record_request(
        endpoint=endpoint, duration_seconds=time.perf_counter() - start_time, status="success"
    )
    return body, status


@directory_blueprint.get("/health")
def directory_healthcheck():
    """
    Lightweight health endpoint proving the blueprint mounted correctly.
    """
    state = current_app.extensions.get("directory", {})
    normalizers = state.get("active_normalizers", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "worker_enabled": state.get("worker_enabled", False),
                "normalizers": [descriptor.as_dict() for descriptor in normalizers],
            }
        ),
        200,
    )


@directory_blueprint.get("/worker_health")
def directory_worker_health():
    """Validate worker availability via the heartbeat task."""
    denied = _ensure_access()
    if denied:
        return denied

    state = current_app.extensions.get("directory", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload: dict[str, Any] = {
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; set DIRECTORY_WORKER_ENABLED=true and start the worker."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("directory.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        payload["status"] = "ok"
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504


@directory_blueprint.get("/sources")
def directory_sources_list():
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        scope = _request_scope(required=False)
        sources = api.list_sources(scope if (scope["school_id"] or scope["district_id"]) else None)
        visible = [
            source
            for source in sources
            if user_can_access_scope(current_user, school_id=source["school_id"], district_id=source["district_id"])
        ]
        return jsonify({"sources": visible, "total": len(visible)}), HTTPStatus.OK

    return _execute("sources_list", handler)


@directory_blueprint.post("/sources/<int:source_id>/sync")
def directory_source_sync(source_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        source = _load(DirectorySource, source_id, SourceNotFoundError, "Directory source")
        if not _in_scope(source):
            return _forbidden_scope()
        body = _json_body()
        result = api.sync_source(
            source_id,
            deactivate_missing=_as_bool(body.get("deactivate_missing")),
            dry_run=_as_bool(body.get("dry_run")),
            actor_user_id=current_user.id,
        )
        status = HTTPStatus.ACCEPTED if result.get("status") == "queued" else HTTPStatus.OK
        return jsonify(result), status

    return _execute("source_sync", handler)


@directory_blueprint.get("/runs/<int:run_id>")
def directory_run_detail(run_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        run = _load(SourceRun, run_id, RunNotFoundError, "Source run")
        if not _in_scope(run.source):
            return _forbidden_scope()
        return jsonify(api.get_run(run_id)), HTTPStatus.OK

    return _execute("run_detail", handler)


@directory_blueprint.get("/approvals")
def directory_approvals_list():
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        scope = _request_scope(required=True)
        if not user_can_access_scope(current_user, **scope):
            return _forbidden_scope()
        start_time = time.perf_counter()
        approvals = api.list_approvals(
            scope,
            status=request.args.get("status", "pending"),
            limit=request.args.get("limit"),
        )
        DirectoryMonitoring.record_approvals_list(
            duration_seconds=time.perf_counter() - start_time,
            status="success",
            result_count=len(approvals),
        )
        return jsonify({"approvals": approvals, "count": len(approvals), "scope": scope}), HTTPStatus.OK

    return _execute("approvals_list", handler)


@directory_blueprint.get("/approvals/<int:approval_id>")
def directory_approval_detail(approval_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        approval = _load(DeactivationApproval, approval_id, ApprovalNotFoundError, "Approval")
        if not _in_scope(approval):
            return _forbidden_scope()
        return jsonify(api.get_approval(approval_id)), HTTPStatus.OK

    return _execute("approval_detail", handler)


@directory_blueprint.post("/approvals/<int:approval_id>/approve")
def directory_approval_approve(approval_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        approval = _load(DeactivationApproval, approval_id, ApprovalNotFoundError, "Approval")
        if not _in_scope(approval):
            return _forbidden_scope()
        reason = (_json_body().get("reason") or "").strip() or None
        return jsonify(api.approve(approval_id, actor_user_id=current_user.id, reason=reason)), HTTPStatus.OK

    return _execute("approval_approve", handler)


@directory_blueprint.post("/approvals/<int:approval_id>/reject")
def directory_approval_reject(approval_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        approval = _load(DeactivationApproval, approval_id, ApprovalNotFoundError, "Approval")
        if not _in_scope(approval):
            return _forbidden_scope()
        reason = (_json_body().get("reason") or "").strip()
        if not reason:
            raise ValueError("A rejection reason is required.")
        return jsonify(api.reject(approval_id, actor_user_id=current_user.id, reason=reason)), HTTPStatus.OK

    return _execute("approval_reject", handler)


@directory_blueprint.post("/approvals/<int:approval_id>/apply")
def directory_approval_apply(approval_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        approval = _load(DeactivationApproval, approval_id, ApprovalNotFoundError, "Approval")
        if not _in_scope(approval):
            return _forbidden_scope()
        if api.worker_enabled():
            return jsonify(api.enqueue_apply(approval_id, actor_user_id=current_user.id)), HTTPStatus.ACCEPTED
        return jsonify(api.apply(approval_id, actor_user_id=current_user.id)), HTTPStatus.OK

    return _execute("approval_apply", handler)


@directory_blueprint.post("/previews/<int:preview_id>/apply")
def directory_preview_apply(preview_id: int):
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        preview = _load(DirectoryPreview, preview_id, PreviewNotFoundError, "Preview")
        if not _in_scope(preview):
            return _forbidden_scope()
        return jsonify(api.apply_preview(preview_id, actor_user_id=current_user.id)), HTTPStatus.OK

    return _execute("preview_apply", handler)


@directory_blueprint.get("/ops-summary")
def directory_ops_summary():
    denied = _ensure_access()
    if denied:
        return denied

    def handler():
        scope = _request_scope(required=True)
        if not user_can_access_scope(current_user, **scope):
            return _forbidden_scope()
        return jsonify(api.get_ops_summary(scope)), HTTPStatus.OK

    return _execute("ops_summary", handler)
