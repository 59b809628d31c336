"""
``flask directory`` commands.

Thin wrappers over ``flask_app.directory.api`` so operators can run syncs,
decide approvals and apply them from a shell or cron.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import AppGroup, ScriptInfo

from flask_app.utils.directory import get_directory_normalizers

from . import api
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import DirectorySyncError


@click.group(name="directory", cls=AppGroup, invoke_without_command=True)
@click.pass_context
def directory_cli(ctx):
    """
    Directory sync commands.

    Lists the enabled normalizers when invoked without a subcommand.
    """
    app = ctx.ensure_object(ScriptInfo).load_app()
    if ctx.invoked_subcommand is None:
        normalizers = get_directory_normalizers(app)
        click.echo("Enabled directory normalizers:")
        for name in normalizers:
            click.echo(f"  - {name}")


def get_disabled_directory_group() -> click.Group:
    """
    Return a minimal command group that tells the operator the feature is off.
    """

    @click.group(name="directory", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException(
            "Directory commands are unavailable because DIRECTORY_ENABLED=false. "
            "Set DIRECTORY_ENABLED=true to enable them."
        )

    return disabled_group


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _fail(exc: DirectorySyncError) -> click.ClickException:
    return click.ClickException(f"{exc} (reason: {exc.reason})")


def _scope_options(func):
    func = click.option("--district", "district_id", help="District id of the tenant scope.")(func)
    func = click.option("--school", "school_id", help="School id of the tenant scope.")(func)
    return func


def _require_scope(school_id: Optional[str], district_id: Optional[str]) -> dict:
    if not school_id and not district_id:
        raise click.UsageError("Provide --school or --district.")
    return {"school_id": school_id, "district_id": district_id}


@directory_cli.command("sources")
@_scope_options
def sources_command(school_id: Optional[str], district_id: Optional[str]):
    """List configured directory sources."""
    scope = {"school_id": school_id, "district_id": district_id} if (school_id or district_id) else None
    sources = api.list_sources(scope)
    if not sources:
        click.echo("No directory sources configured.")
        return
    for source in sources:
        state = "enabled" if source["is_enabled"] else "disabled"
        click.echo(
            f"{source['id']:>5}  {source['source_type']:<10} {state:<8} {source['name']}"
            f"  (last run: {source['last_run_at'] or 'never'})"
        )


@directory_cli.command("sync")
@click.argument("source_id", type=int)
@click.option("--deactivate-missing", is_flag=True, help="Propose deactivating records absent from the feed.")
@click.option("--dry-run", is_flag=True, help="Compute the preview without any approval or apply.")
@click.option("--async", "run_async", is_flag=True, help="Queue the run on the Celery worker.")
def sync_command(source_id: int, deactivate_missing: bool, dry_run: bool, run_async: bool):
    """Synchronize one source and print the run result."""
    try:
        result = api.sync_source(
            source_id,
            deactivate_missing=deactivate_missing,
            dry_run=dry_run,
            run_async=run_async,
        )
    except DirectorySyncError as exc:
        raise _fail(exc) from exc
    _echo_json(result)


@directory_cli.command("sync-due")
@click.option("--limit", type=click.IntRange(1, 100), default=None, help="Maximum sources to sync (1-100).")
def sync_due_command(limit: Optional[int]):
    """Sync every source whose cron schedule is due."""
    _echo_json(api.sync_due_sources(limit=limit))


@directory_cli.command("approvals")
@_scope_options
@click.option("--status", default="pending", show_default=True, help="Status filter, or 'all'.")
@click.option("--limit", type=int, default=None, help="Maximum approvals to list (1-200).")
def approvals_command(school_id: Optional[str], district_id: Optional[str], status: str, limit: Optional[int]):
    """List deactivation approvals for a scope."""
    scope = _require_scope(school_id, district_id)
    try:
        approvals = api.list_approvals(scope, status=status, limit=limit)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--status") from exc
    if not approvals:
        click.echo("No approvals found.")
        return
    for approval in approvals:
        stats = approval["stats"]
        click.echo(
            f"{approval['id']:>5}  {approval['status']:<9} source={approval['source_id']}"
            f"  to_deactivate={stats.get('to_deactivate', 0)}  expires={approval['expires_at']}"
        )


@directory_cli.command("approve")
@click.argument("approval_id", type=int)
@click.option("--actor", "actor_user_id", type=int, required=True, help="User id recorded as the decider.")
@click.option("--reason", default=None, help="Optional note stored with the decision.")
def approve_command(approval_id: int, actor_user_id: int, reason: Optional[str]):
    """Approve a pending deactivation approval."""
    try:
        _echo_json(api.approve(approval_id, actor_user_id=actor_user_id, reason=reason))
    except DirectorySyncError as exc:
        raise _fail(exc) from exc


@directory_cli.command("reject")
@click.argument("approval_id", type=int)
@click.option("--actor", "actor_user_id", type=int, required=True, help="User id recorded as the decider.")
@click.option("--reason", required=True, help="Why the deactivations were rejected.")
def reject_command(approval_id: int, actor_user_id: int, reason: str):
    """Reject a pending deactivation approval."""
    try:
        _echo_json(api.reject(approval_id, actor_user_id=actor_user_id, reason=reason))
    except DirectorySyncError as exc:
        raise _fail(exc) from exc
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--reason") from exc


@directory_cli.command("apply")
@click.argument("approval_id", type=int)
@click.option("--actor", "actor_user_id", type=int, default=None, help="User id recorded on the audit event.")
def apply_command(approval_id: int, actor_user_id: Optional[int]):
    """Apply an approved preview (idempotent)."""
    try:
        _echo_json(api.apply(approval_id, actor_user_id=actor_user_id))
    except DirectorySyncError as exc:
        raise _fail(exc) from exc


@directory_cli.command("ops-summary")
@_scope_options
@click.option("--json", "as_json", is_flag=True, help="Emit the full summary as JSON.")
def ops_summary_command(school_id: Optional[str], district_id: Optional[str], as_json: bool):
    """Print aggregate counts for a scope."""
    summary = api.get_ops_summary(_require_scope(school_id, district_id))
    if as_json:
        _echo_json(summary)
        return
    directory = summary["directory"]
    approvals = summary["approvals"]["counts"]
    runs = summary["runs"]["counts"]
    click.echo(f"Sources: {summary['sources']['total']} ({summary['sources']['enabled']} enabled)")
    click.echo("Runs: " + ", ".join(f"{status}={count}" for status, count in runs.items()))
    click.echo("Approvals: " + ", ".join(f"{status}={count}" for status, count in approvals.items()))
    click.echo(f"Directory: active={directory['active']} inactive={directory['inactive']}")
    click.echo(f"Applied deactivations: {summary['applied_deactivations']}")


@directory_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the directory background worker."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if not app.config.get("DIRECTORY_WORKER_ENABLED"):
        click.echo(
            "Warning: DIRECTORY_WORKER_ENABLED is false. Commands will still run, "
            "but API calls keep executing inline until the flag is enabled.",
            err=True,
        )


def _resolve_celery():
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        raise click.ClickException("Directory Celery app is unavailable. Ensure DIRECTORY_ENABLED=true.")
    return celery_app


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    celery_app = _resolve_celery()
    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    click.echo(f"Starting directory worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
def worker_ping(timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    celery_app = _resolve_celery()
    task = celery_app.tasks.get("directory.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'directory.healthcheck' is not registered.")
    try:
        payload = task.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)


__all__ = ["directory_cli", "get_disabled_directory_group"]
