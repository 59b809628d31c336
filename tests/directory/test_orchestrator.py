from __future__ import annotations

from datetime import timedelta

import pytest

from flask_app.directory.errors import (
    FeedFormatError,
    RunInProgressError,
    SourceDisabledError,
    SourceNotFoundError,
    UnsupportedSourceTypeError,
)
from flask_app.directory.normalizers import inline
from flask_app.directory.pipeline import audit as audit_actions
from flask_app.directory.pipeline.orchestrator import RunOrchestrator, SyncOptions, serialize_run
from flask_app.directory.utils import utcnow
from flask_app.models import (
    ApprovalStatus,
    AuditLog,
    DeactivationApproval,
    DirectoryContact,
    DirectoryPreview,
    SourceRun,
    SourceRunStatus,
    db,
)

from directory_helpers import FrozenClock, row, set_feed


def test_sync_without_deactivations_needs_no_approval(source_factory, contact_factory):
    contact_factory("p-1")
    source = source_factory(rows=[row("p-1"), row("p-2")])

    result = RunOrchestrator().sync_source(source.id)

    assert result.status == "succeeded"
    assert result.requires_approval is False
    assert result.approval_id is None
    assert result.stats["to_add"] == 1
    assert result.stats["unchanged"] == 1
    assert result.stats["upserted"] == 0

    run = db.session.get(SourceRun, result.run_id)
    assert run.status == SourceRunStatus.SUCCEEDED
    assert run.active_source_id is None
    assert run.finished_at is not None
    assert run.source.last_run_at is not None
    preview = db.session.get(DirectoryPreview, result.preview_id)
    assert preview.source_run_id == run.id
    assert preview.diff_json["adds"][0]["external_id"] == "p-2"
    # Previews never touch canonical records.
    assert DirectoryContact.query.count() == 1


def test_deactivating_sync_creates_pending_approval(source_factory, contact_factory, user_factory):
    user = user_factory("ops", directory_role="admin")
    contact_factory("p-1")
    contact_factory("p-2")
    source = source_factory(rows=[row("p-1")])

    result = RunOrchestrator().sync_source(
        source.id, SyncOptions(deactivate_missing=True), actor_user_id=user.id
    )

    assert result.requires_approval is True
    approval = db.session.get(DeactivationApproval, result.approval_id)
    assert approval.status == ApprovalStatus.PENDING
    assert approval.preview_id == result.preview_id
    assert approval.requested_by_user_id == user.id
    assert approval.stats_json["to_deactivate"] == 1
    assert result.stats["deactivated"] == 1

    actions = [entry.action for entry in AuditLog.query.order_by(AuditLog.id).all()]
    assert audit_actions.APPROVAL_REQUESTED in actions
    assert audit_actions.SOURCE_SYNC_COMPLETED in actions


def test_dry_run_never_requests_approval(source_factory, contact_factory):
    contact_factory("p-1")
    source = source_factory(rows=[])

    result = RunOrchestrator().sync_source(source.id, SyncOptions(deactivate_missing=True, dry_run=True))

    assert result.requires_approval is False
    assert result.stats["to_deactivate"] == 1
    assert DeactivationApproval.query.count() == 0


def test_candidates_without_deactivate_flag_are_informational(source_factory, contact_factory):
    contact_factory("p-1")
    source = source_factory(rows=[])

    result = RunOrchestrator().sync_source(source.id)

    assert result.requires_approval is False
    assert result.stats["to_deactivate"] == 1
    assert result.stats["deactivated"] == 0


def test_unknown_and_disabled_sources_are_rejected(source_factory):
    disabled = source_factory(is_enabled=False)

    with pytest.raises(SourceNotFoundError):
        RunOrchestrator().sync_source(9999)
    with pytest.raises(SourceDisabledError):
        RunOrchestrator().sync_source(disabled.id)
    assert SourceRun.query.count() == 0


def test_second_run_while_active_is_refused(source_factory):
    source = source_factory(rows=[row("p-1")])
    orchestrator = RunOrchestrator()
    queued = orchestrator.enqueue_run(source.id, SyncOptions())

    with pytest.raises(RunInProgressError) as excinfo:
        orchestrator.sync_source(source.id)

    assert excinfo.value.active_run_id == queued.id
    assert excinfo.value.as_dict()["reason"] == "run_in_progress"

    finished = orchestrator.execute_run(queued.id)
    assert finished.status == "succeeded"
    assert orchestrator.sync_source(source.id).status == "succeeded"


def test_stale_active_run_is_failed_and_slot_released(source_factory):
    source = source_factory(rows=[row("p-1")])
    clock = FrozenClock(utcnow())
    stuck = RunOrchestrator(clock=clock).enqueue_run(source.id, SyncOptions())

    clock.advance(hours=2)
    result = RunOrchestrator(clock=clock).sync_source(source.id)

    assert result.status == "succeeded"
    db.session.refresh(stuck)
    assert stuck.status == SourceRunStatus.FAILED
    assert stuck.error_reason == "timeout"
    assert stuck.active_source_id is None


def test_run_recovered_as_stale_mid_fetch_keeps_its_failure(source_factory, contact_factory, monkeypatch):
    contact_factory("p-2")
    source = source_factory(rows=[row("p-1")])
    fetch = inline.normalize
    later = FrozenClock(utcnow() + timedelta(hours=2))
    replacements = []

    def _slow_fetch(config, *, timeout=None):
        replacements.append(RunOrchestrator(clock=later).enqueue_run(source.id, SyncOptions()))
        return fetch(config, timeout=timeout)

    monkeypatch.setattr("flask_app.directory.normalizers.inline.normalize", _slow_fetch)

    result = RunOrchestrator().sync_source(source.id, SyncOptions(deactivate_missing=True))

    assert result.status == "failed"
    assert result.error_reason == "timeout"
    assert result.preview_id is None
    first = db.session.get(SourceRun, result.run_id)
    assert first.status == SourceRunStatus.FAILED
    assert first.stats_json in (None, {})
    assert DirectoryPreview.query.count() == 0
    assert DeactivationApproval.query.count() == 0
    actions = [entry.action for entry in AuditLog.query.filter_by(entity_type="source_run", entity_id=str(first.id)).all()]
    assert actions == [audit_actions.SOURCE_SYNC_FAILED]
    db.session.refresh(replacements[0])
    assert replacements[0].status == SourceRunStatus.QUEUED
    assert replacements[0].active_source_id == source.id


def test_feed_failure_fails_run_without_preview(source_factory):
    source = source_factory(source_type="csv", config={})

    with pytest.raises(FeedFormatError):
        RunOrchestrator().sync_source(source.id)

    run = SourceRun.query.one()
    assert run.status == SourceRunStatus.FAILED
    assert run.error_reason == "invalid_feed"
    assert run.active_source_id is None
    assert DirectoryPreview.query.count() == 0
    failures = AuditLog.query.filter_by(action=audit_actions.SOURCE_SYNC_FAILED).all()
    assert [entry.entity_id for entry in failures] == [str(run.id)]


def test_unsupported_source_type_is_a_failed_run(source_factory):
    source = source_factory(source_type="ldap", config={})

    with pytest.raises(UnsupportedSourceTypeError):
        RunOrchestrator().sync_source(source.id)

    assert SourceRun.query.one().error_reason == "unsupported_source_type"


def test_unexpected_error_is_recorded_as_internal_error(source_factory, monkeypatch):
    source = source_factory(rows=[row("p-1")])

    def _explode(config, *, timeout=None):
        raise RuntimeError("boom")

    monkeypatch.setattr("flask_app.directory.normalizers.inline.normalize", _explode)

    with pytest.raises(RuntimeError):
        RunOrchestrator().sync_source(source.id)

    run = SourceRun.query.one()
    assert run.error_reason == "internal_error"
    assert run.error_summary == "boom"


def test_row_errors_are_kept_on_the_run(source_factory):
    source = source_factory(rows=[row("p-1", "nope"), row("p-2")])

    result = RunOrchestrator().sync_source(source.id)

    payload = serialize_run(db.session.get(SourceRun, result.run_id))
    assert payload["errors"] == [
        {
            "row_index": 1,
            "reason": "invalid_email",
            "message": "Email 'nope' is not a valid address.",
            "external_id": "p-1",
        }
    ]
    assert payload["stats"]["invalid"] == 1
    assert payload["preview_id"] == result.preview_id


def test_newer_approval_cancels_the_pending_one(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2")
    source = source_factory(rows=[row("p-1")])
    orchestrator = RunOrchestrator()

    first = orchestrator.sync_source(source.id, SyncOptions(deactivate_missing=True))
    set_feed(source, [])
    second = orchestrator.sync_source(source.id, SyncOptions(deactivate_missing=True))

    older = db.session.get(DeactivationApproval, first.approval_id)
    db.session.refresh(older)
    assert older.status == ApprovalStatus.CANCELLED
    assert db.session.get(DeactivationApproval, second.approval_id).status == ApprovalStatus.PENDING


def test_execute_run_on_finished_run_returns_result(source_factory):
    source = source_factory(rows=[row("p-1")])
    orchestrator = RunOrchestrator()
    result = orchestrator.sync_source(source.id)

    again = orchestrator.execute_run(result.run_id)

    assert again.preview_id == result.preview_id
    assert DirectoryPreview.query.count() == 1
