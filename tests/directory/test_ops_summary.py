from flask_app.directory import api
from flask_app.directory.pipeline.apply import ApplyService
from flask_app.directory.pipeline.approvals import ApprovalGate
from flask_app.directory.pipeline.orchestrator import RunOrchestrator, SyncOptions

from directory_helpers import DISTRICT_ID, SCHOOL_ID, row

SCOPE = {"school_id": SCHOOL_ID, "district_id": DISTRICT_ID}


def test_empty_scope_reports_zeroes():
    summary = api.get_ops_summary({"school_id": "nowhere"})

    assert summary["scope"] == {"school_id": "nowhere", "district_id": None}
    assert summary["sources"]["total"] == 0
    assert set(summary["runs"]["counts"].values()) == {0}
    assert summary["approvals"]["pending"] == []
    assert summary["directory"] == {"active": 0, "inactive": 0, "last_change_counts": None}
    assert summary["applied_deactivations"] == 0


def test_summary_tracks_runs_approvals_and_applied_changes(source_factory, contact_factory):
    for external_id in ("p-1", "p-2", "p-3", "p-4"):
        contact_factory(external_id)
    source = source_factory(rows=[row("p-1"), row("p-2"), row("p-3"), row("p-5")])
    source_factory(name="Paused", is_enabled=False)
    orchestrator = RunOrchestrator()

    gated = orchestrator.sync_source(source.id, SyncOptions(deactivate_missing=True))
    summary = api.get_ops_summary(SCOPE)

    assert summary["sources"]["total"] == 2
    assert summary["sources"]["enabled"] == 1
    assert summary["sources"]["items"][0]["last_run"]["status"] == "succeeded"
    assert summary["sources"]["items"][1]["last_run"] is None
    assert summary["runs"]["counts"]["succeeded"] == 1
    assert summary["approvals"]["counts"]["pending"] == 1
    (pending,) = summary["approvals"]["pending"]
    assert pending["id"] == gated.approval_id
    assert pending["to_deactivate"] == 1
    assert pending["to_deactivate_pct"] == 25.0

    ApprovalGate().approve(gated.approval_id, actor_user_id=None)
    ApplyService().apply(gated.approval_id)
    summary = api.get_ops_summary(SCOPE)

    assert summary["approvals"]["counts"]["approved"] == 1
    assert summary["approvals"]["pending"] == []
    assert summary["directory"]["active"] == 4
    assert summary["directory"]["inactive"] == 1
    last = summary["directory"]["last_change_counts"]
    assert (last["added"], last["updated"], last["deactivated"]) == (1, 0, 1)
    assert summary["applied_deactivations"] == 1


def test_summary_is_limited_to_its_scope(source_factory, contact_factory):
    contact_factory("p-1", school_id="sch-2")
    other = source_factory(school_id="sch-2", rows=[])
    RunOrchestrator().sync_source(other.id, SyncOptions(deactivate_missing=True))

    summary = api.get_ops_summary(SCOPE)

    assert summary["sources"]["total"] == 0
    assert summary["approvals"]["counts"]["pending"] == 0
    assert summary["directory"]["active"] == 0


def test_district_scope_rolls_up_school_contacts(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2", is_active=False)
    source = source_factory(rows=[])
    RunOrchestrator().sync_source(source.id, SyncOptions(deactivate_missing=True))

    summary = api.get_ops_summary({"district_id": DISTRICT_ID})

    assert summary["sources"]["total"] == 1
    assert summary["approvals"]["counts"]["pending"] == 1
    assert (summary["directory"]["active"], summary["directory"]["inactive"]) == (1, 1)


def test_dry_run_never_counts_as_applied(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2")
    source = source_factory(rows=[row("p-1")])

    result = RunOrchestrator().sync_source(source.id, SyncOptions(deactivate_missing=True, dry_run=True))
    summary = api.get_ops_summary(SCOPE)

    assert result.approval_id is None
    assert summary["runs"]["counts"]["succeeded"] == 1
    assert summary["approvals"]["pending"] == []
    assert summary["directory"]["active"] == 2
    assert summary["directory"]["last_change_counts"] is None
    assert summary["applied_deactivations"] == 0
