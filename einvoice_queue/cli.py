import importlib
import json

import click

from .config import DB_FILE
from .db import connect_db, init_db
from .errors import JobNotFoundError, JobValidationError, PayloadValidationError
from .logging_utils import setup_logging
from .models import CancellationMethod, CancellationReason, JobPriority, JobStatus, JobType
from .queue import JobQueue
from .repository import get_config, set_config
from .worker import WorkerPool, setup_signal_handlers

DEFAULT_REGISTRY = "einvoice_queue.processors:default_registry"


def load_registry(spec: str, db_path: str):
    """Build a processor registry from a ``module:factory`` reference."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"expected module:factory, got {spec!r}", param_hint="--registry")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(db_path)


def _queue(ctx) -> JobQueue:
    obj = ctx.obj
    if "queue" not in obj:
        obj["queue"] = JobQueue(obj["db"], load_registry(obj["registry"], obj["db"]))
        ctx.call_on_close(obj["queue"].close)
    return obj["queue"]


def _fail(message) -> None:
    click.secho(f"Error: {message}", fg="red")
    raise SystemExit(1)


def _json_arg(value, what):
    if value is None:
        return None
    if value.startswith("@"):
        with open(value[1:], encoding="utf-8") as fh:
            value = fh.read()
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{what} is not valid JSON: {e}")


@click.group(help="einvoice-queue: background jobs for bulk e-Invoice work")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, help="SQLite database file")
@click.option("--registry", default=DEFAULT_REGISTRY, show_default=True,
              help="Processor registry factory, as module:callable")
@click.pass_context
def cli(ctx, db_path, registry):
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db": db_path, "registry": registry}


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.argument("job_type", type=click.Choice([t.value for t in JobType]))
@click.option("--payload", required=True, help="Payload JSON, or @file.json")
@click.option("--priority", default="normal", show_default=True,
              type=click.Choice([p.name.lower() for p in JobPriority]))
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.option("--config", "config_json", default=None, help="Job config overrides as JSON")
@click.option("--owner", "owner_id", default=None, help="Owner id (defaults to organization_id)")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h")
@click.pass_context
def enqueue_cmd(ctx, job_type, payload, priority, max_retries, config_json, owner_id, delay_str):
    try:
        overrides = _json_arg(config_json, "--config") or {}
        if max_retries is not None:
            overrides["max_retries"] = max_retries
        job_id = _queue(ctx).enqueue(
            job_type,
            _json_arg(payload, "--payload"),
            overrides or None,
            priority=priority,
            owner_id=owner_id,
            delay=delay_str,
        )
    except PayloadValidationError as e:
        _fail("\n  ".join([str(e.job_type) + " payload rejected:"] + e.errors))
    except (JobValidationError, ValueError) as e:
        _fail(e)
    click.secho(f"Enqueued {job_id} ({job_type}, priority={priority})", fg="green")


# ---------- Jobs ----------
@cli.command("status", help="Show one job, or job counts when no id is given")
@click.argument("job_id", required=False)
@click.option("--full", is_flag=True, help="Include payload, config and retry history")
@click.pass_context
def status_cmd(ctx, job_id, full):
    queue = _queue(ctx)
    if job_id is None:
        click.echo(json.dumps(queue.counts(), indent=2))
        return
    try:
        job = queue.get_status(job_id)
    except JobNotFoundError as e:
        _fail(e)
    click.echo(json.dumps(job.to_dict() if full else job.status_view(), indent=2))


@cli.command("list")
@click.option("--status", type=click.Choice([s.value for s in JobStatus]), default=None)
@click.option("--type", "job_type", type=click.Choice([t.value for t in JobType]), default=None)
@click.option("--owner", "owner_id", default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_context
def list_cmd(ctx, status, job_type, owner_id, limit):
    jobs = _queue(ctx).list_jobs(status=status, job_type=job_type, owner_id=owner_id, limit=limit)
    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        error = j.result.error if j.result else None
        click.echo(
            f"{j.id} | {j.type.value:<15} | {j.status.value:<10} | {j.priority.name:<8} "
            f"| attempt={j.attempt}/{j.config.max_retries + 1} | progress={j.progress.percent:.0f}% "
            f"| error={error}"
        )


@cli.command("stats")
@click.pass_context
def stats_cmd(ctx):
    click.echo(json.dumps(_queue(ctx).stats(), indent=2))


@cli.command("cancel")
@click.argument("job_id")
@click.option("--reason", type=click.Choice([r.value for r in CancellationReason if r != CancellationReason.TIMEOUT]),
              default=CancellationReason.USER_REQUESTED.value, show_default=True)
@click.option("--force", is_flag=True, help="Do not wait for the processor to stop")
@click.option("--wait", is_flag=True, help="Block until the job is terminal")
@click.pass_context
def cancel_cmd(ctx, job_id, reason, force, wait):
    method = CancellationMethod.FORCED if force else CancellationMethod.COOPERATIVE
    try:
        accepted = _queue(ctx).cancel(job_id, CancellationReason(reason), method, wait=wait)
    except JobNotFoundError as e:
        _fail(e)
    if not accepted:
        _fail(f"Job {job_id} cannot be cancelled.")
    click.secho(f"Cancellation requested for {job_id}.", fg="yellow")


@cli.command("cancel-all", help="Cancel every active job, or only those of one owner")
@click.option("--owner", "owner_id", default=None, help="Only jobs of this owner (organization id)")
@click.option("--reason", type=click.Choice([r.value for r in CancellationReason if r != CancellationReason.TIMEOUT]),
              default=None, help="Default: user_requested with --owner, system_shutdown without")
@click.option("--force", is_flag=True, help="With --owner, do not wait for processors to stop")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def cancel_all_cmd(ctx, owner_id, reason, force, yes):
    queue = _queue(ctx)
    if owner_id:
        method = CancellationMethod.FORCED if force else CancellationMethod.COOPERATIVE
        outcome = queue.cancel_owner_jobs(
            owner_id, CancellationReason(reason or CancellationReason.USER_REQUESTED.value), method
        )
    else:
        if not yes:
            click.confirm("Cancel every active job in the store?", abort=True)
        outcome = queue.cancel_all_active(
            CancellationReason(reason or CancellationReason.SYSTEM_SHUTDOWN.value)
        )
    if not outcome:
        click.echo("No active jobs.")
        return
    click.secho(f"Cancelled {sum(outcome.values())} of {len(outcome)} active job(s).", fg="yellow")
    for job_id, accepted in outcome.items():
        if not accepted:
            click.echo(f"  refused: {job_id}")


@cli.command("purge", help="Delete finished jobs older than the retention period")
@click.option("--older-than-days", type=int, default=None, help="Defaults to retention_days")
@click.pass_context
def purge_cmd(ctx, older_than_days):
    removed = _queue(ctx).purge_finished(older_than_days)
    click.echo(f"Purged {removed} job(s).")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=None, help="Number of worker slots (default: concurrency)")
@click.option("--poll-interval", type=float, default=None, help="Seconds between idle polls")
@click.option("--name", default="worker", show_default=True, help="Pool name, prefix of slot names")
@click.pass_context
def worker_start(ctx, count, poll_interval, name):
    queue = _queue(ctx)
    setup_logging(queue.settings.log_level)
    pool = WorkerPool(queue, concurrency=count, poll_interval=poll_interval, name=name)
    click.secho(f"Starting {pool.concurrency} worker(s). Press Ctrl+C to stop…", fg="cyan")
    setup_signal_handlers(pool)
    pool.run_forever()
    click.secho("Workers stopped.", fg="yellow")


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@click.pass_context
def dlq_list_cmd(ctx):
    rows = _queue(ctx).dead_letters()
    if not rows:
        click.echo("DLQ is empty.")
        return

    for r in rows:
        click.echo(f"{r['job_id']} | {r['type']} | attempts={r['attempt']} | last_error={r['last_error']}")


@dlq_group.command("retry")
@click.argument("job_id")
@click.pass_context
def dlq_retry_cmd(ctx, job_id):
    try:
        new_id = _queue(ctx).requeue_dead_letter(job_id)
    except JobNotFoundError:
        _fail(f"Job {job_id} not found in DLQ.")
    click.secho(f"Re-queued DLQ job {job_id} as {new_id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db"])
    try:
        normalized = set_config(conn, key, value)
        click.secho(f"Config updated: {key}={normalized}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
