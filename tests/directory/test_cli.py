import json

import pytest

from flask_app.directory import init_directory
from flask_app.models import ApprovalStatus, DeactivationApproval, DirectoryContact, db

from directory_helpers import DISTRICT_ID, SCHOOL_ID, row


@pytest.fixture
def gated(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2")
    return source_factory(name="Spring roster", rows=[row("p-1")])


def _sync(runner, source_id, *flags):
    result = runner.invoke(args=["directory", "sync", str(source_id), *flags])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_group_lists_normalizers(runner):
    result = runner.invoke(args=["directory"])

    assert result.exit_code == 0, result.output
    assert "Enabled directory normalizers:" in result.output
    assert "  - inline" in result.output


def test_sources_listing(runner, gated):
    result = runner.invoke(args=["directory", "sources", "--school", SCHOOL_ID])

    assert result.exit_code == 0, result.output
    assert "Spring roster" in result.output
    assert "last run: never" in result.output

    empty = runner.invoke(args=["directory", "sources", "--school", "nowhere"])
    assert "No directory sources configured." in empty.output


def test_sync_prints_run_result(runner, gated):
    payload = _sync(runner, gated.id, "--deactivate-missing")

    assert payload["requires_approval"] is True
    assert payload["stats"]["to_deactivate"] == 1


def test_sync_failure_reports_reason(runner, gated):
    result = runner.invoke(args=["directory", "sync", "999"])

    assert result.exit_code != 0
    assert "reason: source_not_found" in result.output


def test_approve_and_apply_from_the_shell(runner, gated, admin_user):
    approval_id = _sync(runner, gated.id, "--deactivate-missing")["approval_id"]

    listed = runner.invoke(args=["directory", "approvals", "--school", SCHOOL_ID, "--district", DISTRICT_ID])
    assert listed.exit_code == 0, listed.output
    assert "to_deactivate=1" in listed.output

    approved = runner.invoke(args=["directory", "approve", str(approval_id), "--actor", str(admin_user.id)])
    assert approved.exit_code == 0, approved.output
    assert json.loads(approved.output)["status"] == "approved"

    applied = runner.invoke(args=["directory", "apply", str(approval_id), "--actor", str(admin_user.id)])
    assert applied.exit_code == 0, applied.output
    assert json.loads(applied.output)["result"]["counts"]["deactivated"] == 1
    contact = DirectoryContact.query.filter_by(external_id="p-2").one()
    db.session.refresh(contact)
    assert contact.is_active is False


def test_reject_from_the_shell(runner, gated, admin_user):
    approval_id = _sync(runner, gated.id, "--deactivate-missing")["approval_id"]

    missing = runner.invoke(args=["directory", "reject", str(approval_id), "--actor", str(admin_user.id)])
    assert missing.exit_code == 2

    rejected = runner.invoke(
        args=["directory", "reject", str(approval_id), "--actor", str(admin_user.id), "--reason", "stale export"]
    )
    assert rejected.exit_code == 0, rejected.output
    approval = db.session.get(DeactivationApproval, approval_id)
    db.session.refresh(approval)
    assert approval.status == ApprovalStatus.REJECTED

    closed = runner.invoke(args=["directory", "apply", str(approval_id)])
    assert closed.exit_code != 0
    assert "reason: approval_closed" in closed.output


def test_approvals_requires_scope_and_valid_status(runner):
    unscoped = runner.invoke(args=["directory", "approvals"])
    assert unscoped.exit_code == 2
    assert "--school or --district" in unscoped.output

    bad_status = runner.invoke(args=["directory", "approvals", "--school", SCHOOL_ID, "--status", "maybe"])
    assert bad_status.exit_code == 2


def test_ops_summary_outputs(runner, gated):
    _sync(runner, gated.id, "--deactivate-missing")

    text = runner.invoke(args=["directory", "ops-summary", "--school", SCHOOL_ID, "--district", DISTRICT_ID])
    assert text.exit_code == 0, text.output
    assert "Sources: 1 (1 enabled)" in text.output
    assert "pending=1" in text.output

    as_json = runner.invoke(
        args=["directory", "ops-summary", "--school", SCHOOL_ID, "--district", DISTRICT_ID, "--json"]
    )
    assert json.loads(as_json.output)["directory"]["active"] == 2


def test_sync_due_runs_scheduled_sources(runner, source_factory):
    source_factory(name="hourly", schedule_cron="0 * * * *", rows=[row("p-1")])
    source_factory(name="manual", rows=[row("p-2")])

    result = runner.invoke(args=["directory", "sync-due", "--limit", "5"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["processed"] == 1
    assert payload["completed"] == 1


def test_disabled_feature_swaps_in_stub_group(app, monkeypatch):
    monkeypatch.setitem(app.config, "DIRECTORY_ENABLED", False)
    init_directory(app)
    try:
        result = app.test_cli_runner().invoke(args=["directory"])
        assert result.exit_code != 0
        assert "DIRECTORY_ENABLED=false" in result.output
    finally:
        monkeypatch.setitem(app.config, "DIRECTORY_ENABLED", True)
        init_directory(app)
