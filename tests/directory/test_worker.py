import json
from typing import Any, Dict

import pytest
from kombu.exceptions import OperationalError

from flask_app.directory import api, get_celery_app
from flask_app.directory.celery_app import DEFAULT_QUEUE_NAME
from flask_app.directory.errors import ApprovalNotApprovedError, WorkerUnavailableError
from flask_app.directory.pipeline.approvals import ApprovalGate
from flask_app.models import DeactivationApproval, DirectoryContact, SourceRun, SourceRunStatus, db

from directory_helpers import row


@pytest.fixture
def roster(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2")
    return source_factory(rows=[row("p-1")])


def test_celery_defaults_to_sqlite_transport(app, tmp_path, monkeypatch):
    sqlite_path = tmp_path / "custom.sqlite"
    monkeypatch.setitem(app.config, "CELERY_SQLITE_PATH", str(sqlite_path))
    monkeypatch.setitem(app.config, "CELERY_BROKER_URL", None)
    monkeypatch.setitem(app.config, "CELERY_RESULT_BACKEND", None)
    app.extensions["directory"]["celery_app"] = None

    celery_app = get_celery_app(app)

    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "directory.sync_source" in celery_app.tasks


def test_celery_config_accepts_json_overrides(app):
    app.config["CELERY_CONFIG"] = '{"task_always_eager": true}'
    app.extensions["directory"]["celery_app"] = None

    assert get_celery_app(app).conf.task_always_eager is True


def test_async_sync_returns_job_id(eager_worker, roster):
    result = api.sync_source(roster.id, deactivate_missing=True)

    assert result["job_id"]
    assert result["status"] == "succeeded"
    assert result["requires_approval"] is True
    run = db.session.get(SourceRun, result["run_id"])
    assert run.job_id == result["job_id"]


def test_dispatch_failure_fails_the_queued_run(eager_worker, roster, monkeypatch):
    task = eager_worker.tasks["directory.sync_source"]

    def broker_down(*args, **kwargs):
        raise OperationalError("connection refused")

    monkeypatch.setattr(task, "apply_async", broker_down)

    with pytest.raises(WorkerUnavailableError):
        api.sync_source(roster.id)

    run = SourceRun.query.one()
    db.session.refresh(run)
    assert run.status == SourceRunStatus.FAILED
    assert run.error_reason == "worker_unavailable"
    assert run.active_source_id is None


def test_enqueue_apply_runs_on_the_worker(eager_worker, roster):
    approval_id = api.sync_source(roster.id, deactivate_missing=True)["approval_id"]

    with pytest.raises(ApprovalNotApprovedError):
        api.enqueue_apply(approval_id)

    ApprovalGate().approve(approval_id, actor_user_id=None)
    queued = api.enqueue_apply(approval_id)

    assert queued["status"] == "queued"
    approval = db.session.get(DeactivationApproval, approval_id)
    db.session.refresh(approval)
    assert approval.applied_at is not None
    assert approval.apply_job_id == queued["job_id"]
    contact = DirectoryContact.query.filter_by(external_id="p-2").one()
    db.session.refresh(contact)
    assert contact.is_active is False


def test_apply_endpoint_queues_when_worker_enabled(eager_worker, client, login, admin_user, roster):
    login("admin", password="adminpass123")
    approval_id = client.post(
        f"/directory/sources/{roster.id}/sync", json={"deactivate_missing": True}
    ).get_json()["approval_id"]
    client.post(f"/directory/approvals/{approval_id}/approve")

    response = client.post(f"/directory/approvals/{approval_id}/apply")

    assert response.status_code == 202
    assert response.get_json()["status"] == "queued"


def test_worker_health_endpoint_states(app, client, login, admin_user):
    login("admin", password="adminpass123")

    disabled = client.get("/directory/worker_health")
    assert disabled.status_code == 200
    assert disabled.get_json()["status"] == "disabled"

    app.config.update(
        {
            "DIRECTORY_WORKER_ENABLED": True,
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        }
    )
    app.extensions["directory"]["worker_enabled"] = True
    app.extensions["directory"]["celery_app"] = None
    try:
        ok = client.get("/directory/worker_health")
    finally:
        app.extensions["directory"]["worker_enabled"] = False
        app.extensions["directory"]["celery_app"] = None

    assert ok.status_code == 200
    payload = ok.get_json()
    assert payload["status"] == "ok"
    assert payload["heartbeat"]["status"] == "ok"


def test_worker_ping_cli(eager_worker, runner):
    result = runner.invoke(args=["directory", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(eager_worker, runner, monkeypatch):
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(eager_worker, "worker_main", fake_worker_main)

    result = runner.invoke(
        args=["directory", "worker", "run", "--loglevel", "debug", "--concurrency", "2", "--pool", "solo"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        DEFAULT_QUEUE_NAME,
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_beat_schedule_follows_config(app, monkeypatch):
    monkeypatch.setitem(app.config, "DIRECTORY_SCHEDULE_CRON", "30 2 * * 1-5")
    app.extensions["directory"]["celery_app"] = None

    entry = get_celery_app(app).conf.beat_schedule["directory-sync-due-sources"]

    assert entry["task"] == "directory.sync_due_sources"
    assert entry["schedule"].hour == {2}
    assert entry["schedule"].minute == {30}


def test_sync_due_sources_task_runs_eagerly(eager_worker, source_factory):
    source_factory(name="hourly", schedule_cron="0 * * * *", rows=[row("p-1")])

    summary = eager_worker.tasks["directory.sync_due_sources"].apply_async(kwargs={"limit": 5}).get()

    assert summary["completed"] == 1
