"""
CLI commands for the sync engine (``flask sync ...``).
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from identity_sync.sync.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from identity_sync.sync.errors import SyncError
from identity_sync.sync.pipeline import (
    ContinuationScheduler,
    InlineDispatcher,
    RunFilters,
    SyncCoordinator,
    SyncRequest,
    SyncRunService,
)
from identity_sync.sync.registry import get_source_registry
from identity_sync.utils.sync import get_sync_sources, is_sync_enabled

_FOLLOW_STATUSES = ("running", "continuing")


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Sync engine management commands.

    Displays configured sources when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    if ctx.invoked_subcommand is None:
        sources = get_sync_sources(app)
        if not sources:
            click.echo("No sync sources configured.")
        else:
            click.echo("Enabled sync sources:")
            for source in sources:
                click.echo(f"  - {source}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the "
            "sync package initialises before running worker commands."
        )
    return celery_app


def _format_response(payload: dict) -> str:
    if "cancelled" in payload:
        return f"Cancelled {payload['cancelled']} run(s)."
    batch = payload.get("batch") or {}
    totals = payload.get("totals") or {}
    pending = (payload.get("pending") or {}).get("total", 0)
    heading = "Dry run" if payload.get("dryRun") else f"Run {payload.get('syncRunId')}"
    lines = [
        f"{heading} status={payload.get('status')} chunk={payload.get('chunk')} "
        f"progress={payload.get('progressPct')}% hasMore={payload.get('hasMore')}",
        "  batch: " + ", ".join(f"{key}={value}" for key, value in batch.items()),
        "  totals: " + ", ".join(f"{key}={value}" for key, value in totals.items()),
        f"  pending: {pending}",
    ]
    if payload.get("error"):
        lines.append(f"  error: {payload['error']}")
    return "\n".join(lines)


@sync_cli.command("trigger")
@click.option("--source", "sources", multiple=True, help="Source to sync (repeat for composite runs).")
@click.option("--batch-size", type=int, help="Records per source batch.")
@click.option("--run-id", type=int, help="Resume or inspect an existing run.")
@click.option("--import-id", help="Restrict csv rows to one upload.")
@click.option("--dry-run", is_flag=True, help="Report what one batch would change without writing anything.")
@click.option(
    "--follow/--no-follow",
    default=False,
    help="Keep invoking the run in-process until it finishes instead of queueing continuations.",
)
@click.option("--max-invocations", default=1000, show_default=True, help="Safety cap for --follow.")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON responses.")
@click.pass_context
def sync_trigger(ctx, sources, batch_size, run_id, import_id, dry_run, follow, max_invocations, as_json):
    """Run one batch of a sync run (or the whole run with --follow)."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    with app.app_context():
        try:
            request = SyncRequest.coerce(
                {
                    "sources": list(sources),
                    "batchSize": batch_size,
                    "syncRunId": run_id,
                    "importId": import_id,
                    "dryRun": dry_run,
                },
                allowed_sources=get_sync_sources(app),
                default_batch_size=app.config.get("SYNC_DEFAULT_BATCH_SIZE", 50),
                max_batch_size=app.config.get("SYNC_MAX_BATCH_SIZE", 500),
            )
        except SyncError as exc:
            raise click.ClickException(str(exc)) from exc

        scheduler = None
        if follow:
            scheduler = ContinuationScheduler(InlineDispatcher(), max_attempts=1, debounce_seconds=0)
        coordinator = SyncCoordinator(scheduler=scheduler, notifier=app.extensions.get("sync", {}).get("notifier"))

        invocations = 0
        while True:
            try:
                response = coordinator.trigger(request)
            except SyncError as exc:
                raise click.ClickException(str(exc)) from exc
            invocations += 1
            payload = response.to_dict()
            click.echo(json.dumps(payload, indent=2) if as_json else _format_response(payload))
            if not response.ok:
                raise click.ClickException(response.error or "Sync run failed.")
            if not (follow and response.has_more and response.status in _FOLLOW_STATUSES):
                break
            if invocations >= max_invocations:
                click.echo(f"Stopping after {invocations} invocations; resume with --run-id {response.sync_run_id}.")
                break
            request = SyncRequest(
                sources=request.sources,
                batch_size=request.batch_size,
                sync_run_id=response.sync_run_id,
                import_id=request.import_id,
            )


@sync_cli.command("cancel")
@click.option("--run-id", type=int, help="Cancel one run by id.")
@click.option("--source", "sources", multiple=True, help="Cancel every active run for these sources.")
@click.pass_context
def sync_cancel(ctx, run_id, sources):
    """Cancel active sync runs."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if run_id is None and not sources:
        raise click.ClickException("Provide --run-id or at least one --source.")
    with app.app_context():
        try:
            cancelled = SyncCoordinator().cancel(run_id=run_id, sources=tuple(sources))
        except SyncError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(f"Cancelled {cancelled} run(s).")


@sync_cli.command("expire-stale")
@click.option(
    "--max-idle-seconds",
    type=float,
    help="Heartbeat age that counts as stale. Defaults to SYNC_STALE_RUN_SECONDS.",
)
@click.pass_context
def sync_expire_stale(ctx, max_idle_seconds):
    """Pause running runs that stopped sending heartbeats so they can be resumed."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    with app.app_context():
        expired = SyncCoordinator().expire_stale_runs(max_idle_seconds)
    click.echo(f"Paused {expired} stale run(s).")


@sync_cli.command("status")
@click.option("--run-id", type=int, help="Show one run in detail.")
@click.option("--limit", default=10, show_default=True, help="Number of recent runs to list.")
@click.pass_context
def sync_status(ctx, run_id, limit):
    """Show recent sync runs or the detail of one run."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    with app.app_context():
        service = SyncRunService()
        if run_id is not None:
            try:
                summary = service.get_run_summary(run_id)
            except SyncError as exc:
                raise click.ClickException(str(exc)) from exc
            summaries = [summary]
        else:
            summaries = service.list_runs(RunFilters.coerce(page_size=limit)).items
    if not summaries:
        click.echo("No sync runs recorded.")
        return
    for summary in summaries:
        totals = ", ".join(f"{key}={value}" for key, value in summary.totals.items())
        click.echo(f"#{summary.id} {summary.source} {summary.status} chunk={summary.chunk} {totals}")
        if summary.error_message:
            click.echo(f"    {summary.error_message}")


@sync_cli.command("sources")
@click.pass_context
def sync_sources(ctx):
    """List registered sources and whether their configuration is complete."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    enabled = set(get_sync_sources(app))
    for name, descriptor in get_source_registry().items():
        readiness = descriptor.readiness(app.config)
        flag = "enabled" if name in enabled else "disabled"
        missing = ", ".join(readiness["missing_config"])
        suffix = f" (missing: {missing})" if missing else ""
        click.echo(f"{name:<10} {descriptor.kind:<9} {flag:<9} {readiness['status']}{suffix}")


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Run or ping the Celery worker that executes continuations."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if not app.extensions.get("sync", {}).get("worker_enabled"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false; web and CLI triggers will pause "
            "runs instead of publishing continuations.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True, help="Celery worker log level.")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queues to consume.")
@click.option("--concurrency", type=int, help="Worker processes or threads.")
@click.option("--pool", help="Celery pool, e.g. prefork, solo or threads.")
@click.pass_context
def worker_run(ctx, loglevel: str, queues: str, concurrency: Optional[int], pool: Optional[str]):
    """Start a sync worker in this process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    app.extensions["sync"]["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    for flag, value in (("--concurrency", concurrency), ("--pool", pool)):
        if value:
            argv.extend([flag, str(value)])

    click.echo(f"Starting sync worker on {queues} ({' '.join(argv[1:])})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Sync worker stopped.")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for the heartbeat.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Round-trip the ``sync.healthcheck`` task and print its payload."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    heartbeat = _resolve_celery(app).tasks.get("sync.healthcheck")
    if heartbeat is None:
        raise click.ClickException("The sync.healthcheck task is not registered on this Celery app.")

    try:
        payload = heartbeat.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"No heartbeat from a sync worker within {timeout}s.") from exc
    except Exception as exc:
        raise click.ClickException(f"Heartbeat failed: {exc}") from exc
    click.echo(json.dumps(payload, indent=2))
