import json
import threading

import click

from .config import DB_ENV_VAR, DEFAULT_DB_FILE, STAGES, QUEUE_TABLES, cfg_int
from .db import connect_db, init_db, schema_version
from .heartbeat import health_snapshot
from .log import configure_logging
from .models import CRASHED, STATUSES, STOPPED, PipelineError
from .repository import (
    approve, counts, get_config, get_worker_records, list_items, reject, retry_item,
    sends_today, set_config, set_system_running, set_worker_enabled, set_worker_state,
    submit_prospect, submit_reply,
)
from .utils import utcnow

QUEUE_CHOICES = [q[: -len("_queue")] for q in QUEUE_TABLES]


@click.group(help="leadctl — stage pipeline coordinator CLI")
@click.option("--db", "db_path", envvar=DB_ENV_VAR, default=DEFAULT_DB_FILE, show_default=True,
              help=f"SQLite ledger path (env {DB_ENV_VAR})")
@click.pass_context
def cli(ctx, db_path):
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db_path": db_path}


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@cli.command("init", help="Create the ledger and apply pending migrations")
@click.pass_obj
def init_cmd(obj):
    # The group callback already migrated; report where things stand.
    conn = connect_db(obj["db_path"])
    try:
        version = schema_version(conn)
    finally:
        conn.close()
    click.secho(f"Ledger ready at {obj['db_path']} (schema v{version})", fg="green")


# ---------- Submit ----------
@cli.command("submit", help="Add a new prospect to the pipeline")
@click.option("--company", "company_name", required=True, help="Company name")
@click.option("--website", "website_url", default=None, help="Company website URL")
@click.option("--email", "contact_email", default=None, help="Contact email")
@click.option("--contact", "contact_name", default=None, help="Contact name")
@click.option("--priority", default=0, type=int, show_default=True,
              help="Higher number = picked up sooner")
@click.pass_obj
def submit_cmd(obj, company_name, website_url, contact_email, contact_name, priority):
    conn = connect_db(obj["db_path"])
    try:
        item_id = submit_prospect(
            conn,
            company_name=company_name,
            website_url=website_url,
            contact_email=contact_email,
            contact_name=contact_name,
            priority=priority,
        )
        click.secho(f"Submitted prospect {item_id} -> {company_name} (priority={priority})", fg="green")
    except (ValueError, PipelineError) as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("submit-reply", help="Record an inbound reply for classification")
@click.option("--from", "from_email", required=True, help="Sender address")
@click.option("--subject", default="", help="Reply subject")
@click.option("--body", default="", help="Reply body")
@click.option("--company", "company_name", default="", help="Company name, if known")
@click.pass_obj
def submit_reply_cmd(obj, from_email, subject, body, company_name):
    conn = connect_db(obj["db_path"])
    try:
        item_id = submit_reply(
            conn, from_email=from_email, subject=subject, body=body, company_name=company_name
        )
        click.secho(f"Queued reply {item_id} from {from_email}", fg="green")
    except (ValueError, PipelineError) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Inspect ----------
@cli.command("list")
@click.option("--queue", type=click.Choice(QUEUE_CHOICES), default="prospect", show_default=True)
@click.option("--status", type=click.Choice(list(STATUSES)), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_obj
def list_cmd(obj, queue, status, limit):
    conn = connect_db(obj["db_path"])
    try:
        rows = list_items(conn, queue, status=status, limit=limit)
    finally:
        conn.close()

    if not rows:
        click.echo("No items.")
        return

    for r in rows:
        click.echo(
            f"{r['id']:>6} | {r['status']:<17} | attempts={r['attempts']}/{r['max_attempts']} "
            f"| company={r['company_name']} | owner={r['lock_owner']} | last_error={r['last_error']}"
        )


@cli.command("status", help="Item counts per queue and status")
@click.pass_obj
def status_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        data = {
            "queues": {q: {s: n for s, n in c.items() if n} for q, c in counts(conn).items()},
            "workers": {
                r.name: {"enabled": r.enabled, "status": r.status,
                         "processed": r.processed_count, "errors": r.error_count}
                for r in get_worker_records(conn)
            },
            "deliveries": {
                "sent_today": sends_today(conn, utcnow().date().isoformat()),
                "daily_limit": cfg_int(get_config(conn), "delivery.daily_limit"),
            },
        }
        click.echo(json.dumps(data, indent=2))
    finally:
        conn.close()


@cli.command("health", help="Worker liveness and overall system health")
@click.pass_obj
def health_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        click.echo(json.dumps(health_snapshot(conn), indent=2, default=str))
    finally:
        conn.close()


# ---------- Switches ----------
def _toggle(obj, stage, enabled):
    conn = connect_db(obj["db_path"])
    try:
        set_worker_enabled(conn, stage, enabled)
        click.secho(f"Worker {stage} {'enabled' if enabled else 'disabled'}.",
                    fg="green" if enabled else "yellow")
    except PipelineError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("enable", help="Let a stage's worker pick up work again")
@click.argument("stage", type=click.Choice(list(STAGES)))
@click.pass_obj
def enable_cmd(obj, stage):
    _toggle(obj, stage, True)


@cli.command("disable", help="Stop a stage's worker from picking up new work")
@click.argument("stage", type=click.Choice(list(STAGES)))
@click.pass_obj
def disable_cmd(obj, stage):
    _toggle(obj, stage, False)


@cli.command("pause", help="Pause every stage")
@click.pass_obj
def pause_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        set_system_running(conn, False)
        click.secho("System paused.", fg="yellow")
    finally:
        conn.close()


@cli.command("resume", help="Resume every stage")
@click.pass_obj
def resume_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        set_system_running(conn, True)
        click.secho("System resumed.", fg="green")
    finally:
        conn.close()


# ---------- Operator actions ----------
@cli.command("approve", help="Release a drafted email for delivery")
@click.argument("item_id", type=int)
@click.option("--by", "approved_by", default="operator", show_default=True)
@click.pass_obj
def approve_cmd(obj, item_id, approved_by):
    conn = connect_db(obj["db_path"])
    try:
        if approve(conn, item_id, approved_by=approved_by):
            click.secho(f"Approved email {item_id}.", fg="green")
        else:
            raise click.ClickException(f"Email {item_id} is not awaiting approval.")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("reject", help="Drop a drafted email without sending it")
@click.argument("item_id", type=int)
@click.option("--reason", default="rejected by operator", show_default=True)
@click.pass_obj
def reject_cmd(obj, item_id, reason):
    conn = connect_db(obj["db_path"])
    try:
        if reject(conn, item_id, reason=reason):
            click.secho(f"Rejected email {item_id}.", fg="yellow")
        else:
            raise click.ClickException(f"Email {item_id} is not awaiting approval.")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("retry", help="Requeue a failed or exhausted item")
@click.argument("queue", type=click.Choice(QUEUE_CHOICES))
@click.argument("item_id", type=int)
@click.pass_obj
def retry_cmd(obj, queue, item_id):
    conn = connect_db(obj["db_path"])
    try:
        if retry_item(conn, queue, item_id):
            click.secho(f"Re-queued {queue} item {item_id}.", fg="green")
        else:
            raise click.ClickException(f"{queue} item {item_id} is not failed or exhausted.")
    except (click.ClickException, ValueError) as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("restart", help="Clear a crashed stage so the supervisor starts it again")
@click.argument("stage", type=click.Choice(list(STAGES)))
@click.pass_obj
def restart_cmd(obj, stage):
    conn = connect_db(obj["db_path"])
    try:
        record = {r.name: r for r in get_worker_records(conn)}.get(stage)
        if record is None or record.status != CRASHED:
            raise click.ClickException(f"Worker {stage} is not crashed.")
        set_worker_state(conn, stage, STOPPED)
        click.secho(f"Worker {stage} released; the supervisor will restart it.", fg="green")
    except click.ClickException as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Run stage workers")
def worker_group():
    pass


@worker_group.command("run", help="Run one stage's worker in the foreground")
@click.argument("stage", type=click.Choice(list(STAGES)))
@click.pass_obj
def worker_run(obj, stage):
    from .worker import run_stage_process

    click.secho(f"Starting {stage} worker. Press Ctrl+C to stop…", fg="cyan")
    try:
        run_stage_process(stage, obj["db_path"])
    except PipelineError as e:
        _fail(e)
    click.secho(f"Worker {stage} stopped.", fg="yellow")


@cli.group("supervisor", help="Supervise all stage workers")
def supervisor_group():
    pass


@supervisor_group.command("start")
@click.option("--stage", "stages", multiple=True, type=click.Choice(list(STAGES)),
              help="Only supervise these stages (default: every autostart stage)")
@click.pass_obj
def supervisor_start(obj, stages):
    from .supervisor import Supervisor
    from .worker import setup_signal_handlers

    configure_logging()
    stop_event = threading.Event()
    setup_signal_handlers(stop_event, "supervisor")
    try:
        sup = Supervisor(obj["db_path"], stages=list(stages) or None, stop_event=stop_event)
    except PipelineError as e:
        _fail(e)
    click.secho(f"Supervising {', '.join(sup.workers) or 'nothing'}. Press Ctrl+C to stop…",
                fg="cyan")
    sup.run()
    click.secho("Supervisor stopped.", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.argument("key", required=False)
@click.pass_obj
def config_get(obj, key):
    conn = connect_db(obj["db_path"])
    try:
        cfg = get_config(conn)
    finally:
        conn.close()
    if key is None:
        click.echo(json.dumps(cfg, indent=2, sort_keys=True))
    elif key in cfg:
        click.echo(cfg[key])
    else:
        _fail(f"Unknown config key '{key}'")


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(obj, key, value):
    conn = connect_db(obj["db_path"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
