from datetime import datetime, timedelta, timezone

from flask_app.directory.pipeline import scheduling
from flask_app.directory.pipeline.orchestrator import RunOrchestrator, SyncOptions
from flask_app.directory.pipeline.scheduling import (
    clamp_batch_limit,
    find_due_sources,
    is_due,
    next_fire_after,
    sync_due_sources,
)
from flask_app.models import SourceRun

from directory_helpers import row

NOW = datetime(2024, 9, 2, 12, 0, tzinfo=timezone.utc)


def test_next_fire_honours_source_timezone():
    after = datetime(2024, 9, 2, 0, 0, tzinfo=timezone.utc)

    # 06:00 in New York is 10:00 UTC during daylight saving time.
    fire = next_fire_after("0 6 * * *", after, "America/New_York")

    assert fire == datetime(2024, 9, 2, 10, 0, tzinfo=timezone.utc)


def test_unknown_timezone_falls_back_to_utc():
    after = datetime(2024, 9, 2, 0, 0, tzinfo=timezone.utc)

    assert next_fire_after("0 6 * * *", after, "Mars/Olympus") == datetime(2024, 9, 2, 6, 0, tzinfo=timezone.utc)


def test_is_due(source_factory):
    never_ran = source_factory(schedule_cron="0 * * * *")
    recent = source_factory(schedule_cron="0 * * * *", last_run_at=NOW - timedelta(minutes=10))
    overdue = source_factory(schedule_cron="0 * * * *", last_run_at=NOW - timedelta(hours=2))
    unscheduled = source_factory()

    assert is_due(never_ran, NOW)
    assert not is_due(recent, NOW)
    assert is_due(overdue, NOW)
    assert not is_due(unscheduled, NOW)


def test_find_due_sources_skips_invalid_and_disabled(source_factory):
    source_factory(name="bad", schedule_cron="not a cron")
    source_factory(name="off", schedule_cron="* * * * *", is_enabled=False)
    good = source_factory(name="good", schedule_cron="* * * * *")

    due = find_due_sources(now=NOW)

    assert [source.id for source in due] == [good.id]


def test_find_due_sources_respects_limit(source_factory):
    for index in range(4):
        source_factory(name=f"feed-{index}", schedule_cron="* * * * *")

    assert len(find_due_sources(limit=2, now=NOW)) == 2
    assert clamp_batch_limit(0) == 1
    assert clamp_batch_limit(5000) == scheduling.MAX_BATCH_LIMIT


def test_sync_due_sources_runs_each_due_source(source_factory, contact_factory):
    contact_factory("p-1")
    contact_factory("p-2")
    gated = source_factory(name="gated", schedule_cron="* * * * *", rows=[row("p-1")], deactivate_missing_default=True)
    broken = source_factory(name="broken", schedule_cron="* * * * *", source_type="csv", config={})
    busy = source_factory(name="busy", schedule_cron="* * * * *", rows=[])
    RunOrchestrator().enqueue_run(busy.id, SyncOptions())

    summary = sync_due_sources(now=NOW)

    assert summary["processed"] == 3
    assert summary["completed"] == 1
    assert summary["failed"] == 1
    assert summary["skipped"] == 1
    by_source = {item["source_id"]: item for item in summary["results"]}
    assert by_source[gated.id]["requires_approval"] is True
    assert by_source[broken.id]["reason"] == "invalid_feed"
    assert by_source[busy.id]["reason"] == "run_in_progress"
    assert SourceRun.query.filter_by(source_id=gated.id).count() == 1
