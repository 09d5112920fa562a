import json
from dataclasses import replace

import click

from .bridge import bridge_outbox
from .config import ConfigError, Settings
from .db import init_db, connect_db
from .handlers import build_default_registry
from .heartbeat import check_health
from .logging_config import configure_logging
from .models import CORRELATION_FIELDS, JOB_STATES
from .repository import (
    enqueue_job, insert_event, list_jobs, list_events, counts, event_counts, dlq_list,
    dlq_retry, get_config, set_config, load_worker_config,
)
from .utils import parse_delay_to_seconds, parse_ts
from .worker import start_workers, sweep_stale_leases


def _json_option(value, name):
    if value is None:
        return {}
    try:
        parsed = json.loads(value)
    except ValueError as e:
        raise click.ClickException(f"{name} must be a JSON object ({e})")
    if not isinstance(parsed, dict):
        raise click.ClickException(f"{name} must be a JSON object")
    return parsed


@click.group(help="outboxctl: outbox-to-job pipeline CLI")
@click.option("--db", "db_path", default=None, envvar="OUTBOXCTL_DB",
              help="SQLite database file (default: outbox.db)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.pass_context
def cli(ctx, db_path, log_level):
    settings = Settings.from_env()
    if db_path:
        settings = replace(settings, db_path=db_path)
    configure_logging((log_level or settings.log_level).upper())
    ctx.obj = settings
    # Ensure DB/schema exist before any command runs
    init_db(settings.db_path)


# ---------- Producer ----------
@cli.command("emit", help="Append an outbox event")
@click.argument("event_name")
@click.option("--meta", default=None, help="Event metadata as a JSON object")
@click.option("--audience-type", default=None, help="e.g. driver, company, broadcast_drivers")
@click.option("--audience-id", default=None, type=int)
@click.option("--event-key", default=None)
@click.option("--company-id", default=None, type=int)
@click.option("--driver-id", default=None, type=int)
@click.option("--request-id", default=None, type=int)
@click.option("--ticket-id", default=None, type=int)
@click.pass_obj
def emit_cmd(settings, event_name, meta, audience_type, audience_id, event_key, **ids):
    metadata = _json_option(meta, "--meta")
    correlation = {k: v for k, v in ids.items() if k in CORRELATION_FIELDS and v is not None}
    conn = connect_db(settings.db_path)
    try:
        with conn:
            event_id = insert_event(
                conn, event_name, metadata,
                audience_type=audience_type, audience_id=audience_id, event_key=event_key,
                **correlation,
            )
        click.secho(f"Event {event_id} ({event_name}) recorded", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a job directly, bypassing the outbox")
@click.option("--type", "job_type", required=True, help="Job type, e.g. send_email")
@click.option("--payload", default=None, help="Job payload as a JSON object")
@click.option("--max-attempts", default=None, type=int, help="Override max attempts")
@click.option("--idempotency-key", default=None, help="Skip if a job with this key exists")
@click.option("--run-at", default=None,
              help="ISO datetime, UTC unless an offset is given (e.g., 2025-11-09T10:30:00Z)")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.pass_obj
def enqueue_cmd(settings, job_type, payload, max_attempts, idempotency_key, run_at, delay_str):
    conn = connect_db(settings.db_path)
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")

        when = None
        if run_at:
            try:
                when = parse_ts(run_at)
            except ValueError as e:
                raise click.ClickException(f"Invalid --run-at format: {run_at} ({e})")

        created = enqueue_job(
            conn,
            job_type,
            _json_option(payload, "--payload"),
            run_at=when,
            delay_seconds=parse_delay_to_seconds(delay_str) if delay_str else None,
            max_attempts=max_attempts,
            idempotency_key=idempotency_key,
        )
        if created:
            click.secho(
                f"Enqueued {job_type} "
                f"({'delay='+delay_str if delay_str else ('run_at='+run_at if run_at else 'run_at=now')})",
                fg="green"
            )
        else:
            click.secho(f"Skipped: a job with idempotency key {idempotency_key!r} exists", fg="yellow")
    except (ValueError, click.ClickException) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


@cli.command("bridge", help="Run one outbox-to-queue bridge pass")
@click.pass_obj
def bridge_cmd(settings):
    conn = connect_db(settings.db_path)
    try:
        cfg = load_worker_config(conn)
        res = bridge_outbox(conn, batch_size=cfg.bridge_batch_size)
    finally:
        conn.close()
    click.echo(json.dumps(res.__dict__, indent=2))


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command(
    "start", help="Run workers; realtime pushes need a host process that injects a hub"
)
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.pass_obj
def worker_start(settings, count):
    try:
        settings.validate_for_worker()
        conn = connect_db(settings.db_path)
        try:
            load_worker_config(conn)
        finally:
            conn.close()
    except ConfigError as e:
        click.secho(f"Refusing to start: {e}", fg="red")
        raise SystemExit(1)

    registry = build_default_registry(settings)
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, registry, settings.db_path)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(list(JOB_STATES)), default=None)
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_obj
def list_cmd(settings, state, limit):
    conn = connect_db(settings.db_path)
    try:
        jobs = list_jobs(conn, state=state, limit=limit)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>8} | {j.job_type:<14} | {j.status:<10} | attempts={j.attempts}/{j.max_attempts} "
            f"| run_at={j.run_at} | locked_by={j.locked_by} | last_error={j.last_error}"
        )


@cli.command("events", help="Recent outbox events with effective status")
@click.option("--status", "queue_status", type=click.Choice(["pending", "queued"]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_obj
def events_cmd(settings, queue_status, limit):
    conn = connect_db(settings.db_path)
    try:
        rows = list_events(conn, limit=limit, queue_status=queue_status)
    finally:
        conn.close()

    if not rows:
        click.echo("No events.")
        return

    for r in rows:
        click.echo(
            f"{r['id']:>8} | {r['event_name']:<20} | queue={r['queue_status']:<7} "
            f"| effective={r['effective_status']:<10} | job={r['job_id']}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(settings):
    conn = connect_db(settings.db_path)
    try:
        cfg = load_worker_config(conn)
        out = {
            "jobs": counts(conn),
            "events": event_counts(conn),
            "heartbeat": check_health(conn, freshness_seconds=cfg.heartbeat_freshness_seconds).as_dict(),
        }
    finally:
        conn.close()
    click.echo(json.dumps(out, indent=2))


@cli.command("health", help="Exit 0 when the worker heartbeat is fresh, 1 otherwise")
@click.option("--freshness", type=float, default=None, help="Max heartbeat age in seconds")
@click.pass_obj
def health_cmd(settings, freshness):
    conn = connect_db(settings.db_path)
    try:
        if freshness is None:
            freshness = load_worker_config(conn).heartbeat_freshness_seconds
        health = check_health(conn, freshness_seconds=freshness)
    finally:
        conn.close()
    click.echo(json.dumps(health.as_dict(), indent=2))
    if not health.healthy:
        raise SystemExit(1)


@cli.command("sweep", help="Release jobs stuck in processing past the lease timeout")
@click.option("--lease-timeout", type=float, default=None, help="Seconds; defaults to config")
@click.pass_obj
def sweep_cmd(settings, lease_timeout):
    conn = connect_db(settings.db_path)
    try:
        if lease_timeout is None:
            lease_timeout = load_worker_config(conn).lease_timeout_seconds
        reclaimed = sweep_stale_leases(conn, lease_timeout)
    finally:
        conn.close()
    click.echo(f"Reclaimed {reclaimed} job(s).")


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@click.pass_obj
def dlq_list_cmd(settings):
    conn = connect_db(settings.db_path)
    try:
        jobs = dlq_list(conn)
    finally:
        conn.close()

    if not jobs:
        click.echo("DLQ is empty.")
        return

    for j in jobs:
        click.echo(f"{j.id} | {j.job_type} | attempts={j.attempts} | last_error={j.last_error}")


@dlq_group.command("retry")
@click.argument("job_id", type=int)
@click.pass_obj
def dlq_retry_cmd(settings, job_id):
    conn = connect_db(settings.db_path)
    try:
        if dlq_retry(conn, job_id):
            click.secho(f"Re-queued DLQ job {job_id}.", fg="green")
        else:
            raise click.ClickException(f"Job {job_id} not found in DLQ.")
    except click.ClickException as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(settings):
    conn = connect_db(settings.db_path)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(settings, key, value):
    conn = connect_db(settings.db_path)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli()
