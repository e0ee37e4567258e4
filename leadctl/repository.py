import sqlite3
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .config import ALLOWED_CONFIG_KEYS, FORWARD_QUEUES, QUEUE_TABLES, STAGES, cfg_int
from .db import write_txn
from .lease import ORDER_BY_RE, LeaseQueue
from .models import (
    AWAITING_APPROVAL, EXHAUSTED, FAILED, PENDING, SKIPPED, STATUSES,
    UnknownStage, WorkerRecord,
)
from .utils import now_iso, parse_delay_to_seconds


# ---------- Config ----------
def _seconds_value(value: str) -> str:
    """Accept plain seconds or a duration such as '5m' or '1h30m'."""
    try:
        seconds = float(value)
    except ValueError:
        return str(parse_delay_to_seconds(value))
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return str(value)


def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Unknown config key '{key}'. See `leadctl config get` for allowed keys.")
    if key.endswith(".order_by"):
        if not ORDER_BY_RE.match(value):
            raise ValueError(f"Invalid order policy: {value!r}")
    elif key.endswith("_seconds"):
        value = _seconds_value(value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- System / worker switches ----------
def is_system_running(conn) -> bool:
    row = conn.execute("SELECT is_running FROM system_state WHERE id = 1").fetchone()
    return bool(row and row["is_running"])


def set_system_running(conn, running: bool):
    with conn:
        conn.execute(
            "UPDATE system_state SET is_running = ?, updated_at = ? WHERE id = 1",
            (1 if running else 0, now_iso()),
        )


def _check_stage(name: str):
    if name not in STAGES:
        raise UnknownStage(f"Unknown worker '{name}'. Known: {', '.join(STAGES)}")


def is_worker_enabled(conn, name: str) -> bool:
    row = conn.execute("SELECT enabled FROM worker_status WHERE name = ?", (name,)).fetchone()
    # No record yet means nobody switched it off.
    return True if row is None else bool(row["enabled"])


def set_worker_enabled(conn, name: str, enabled: bool):
    _check_stage(name)
    with conn:
        conn.execute(
            "INSERT INTO worker_status(name, enabled) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET enabled = excluded.enabled",
            (name, 1 if enabled else 0),
        )


def set_worker_state(conn, name: str, status: str):
    with conn:
        conn.execute(
            "INSERT INTO worker_status(name, status) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET status = excluded.status",
            (name, status),
        )


# ---------- Daily send counter ----------
def sends_today(conn, today: str) -> int:
    row = conn.execute("SELECT sent_today, sent_date FROM system_state WHERE id = 1").fetchone()
    if row is None or row["sent_date"] != today:
        return 0
    return row["sent_today"]


def record_send(conn, today: str) -> int:
    """Count one delivery against ``today``. The counter starts over on a new day."""
    with write_txn(conn):
        rows = conn.execute(
            "UPDATE system_state SET "
            "sent_today = CASE WHEN sent_date = :today THEN sent_today + 1 ELSE 1 END, "
            "sent_date = :today, updated_at = :now WHERE id = 1 RETURNING sent_today",
            {"today": today, "now": now_iso()},
        ).fetchall()
    return rows[0]["sent_today"] if rows else 0


def get_worker_records(conn) -> List[WorkerRecord]:
    rows = conn.execute("SELECT * FROM worker_status ORDER BY name").fetchall()
    return [
        WorkerRecord(
            name=r["name"],
            enabled=bool(r["enabled"]),
            status=r["status"],
            last_heartbeat=r["last_heartbeat"],
            processed_count=r["processed_count"],
            error_count=r["error_count"],
            started_at=r["started_at"],
            current_item=r["current_item"],
        )
        for r in rows
    ]


# ---------- Submissions ----------
def submit_prospect(
    conn,
    *,
    company_name: str,
    website_url: Optional[str] = None,
    contact_email: Optional[str] = None,
    contact_name: Optional[str] = None,
    priority: int = 0,
    source: str = "manual",
) -> int:
    if not company_name or not company_name.strip():
        raise ValueError("Company name cannot be empty.")
    if website_url:
        parsed = urlparse(website_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid website URL: {website_url}")
    cfg = get_config(conn)
    queue = LeaseQueue(conn, "prospect_queue")
    return queue.insert(
        company_name.strip(),
        {"contact_email": contact_email, "contact_name": contact_name, "source": source},
        max_attempts=cfg_int(cfg, "discovery.max_attempts"),
        priority=priority,
        fields={"website_url": website_url},
    )


def submit_reply(conn, *, from_email: str, subject: str, body: str, company_name: str = "") -> int:
    if not from_email or "@" not in from_email:
        raise ValueError(f"Invalid sender address: {from_email!r}")
    cfg = get_config(conn)
    queue = LeaseQueue(conn, "reply_queue")
    return queue.insert(
        company_name,
        {"from_email": from_email, "subject": subject, "body": body},
        max_attempts=cfg_int(cfg, "replies.max_attempts"),
    )


# ---------- Operator actions ----------
def _queue_name(queue: str) -> str:
    if queue in QUEUE_TABLES:
        return queue
    candidate = f"{queue}_queue"
    if candidate in QUEUE_TABLES:
        return candidate
    raise ValueError(f"Unknown queue '{queue}'. Known: {', '.join(QUEUE_TABLES)}")


def approve(conn, item_id: int, approved_by: str = "operator") -> bool:
    with write_txn(conn):
        res = conn.execute(
            "UPDATE email_queue SET status = ?, approved_by = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (PENDING, approved_by, now_iso(), item_id, AWAITING_APPROVAL),
        )
    return res.rowcount == 1


def reject(conn, item_id: int, reason: str = "rejected by operator") -> bool:
    with write_txn(conn):
        res = conn.execute(
            "UPDATE email_queue SET status = ?, last_error = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (SKIPPED, reason, now_iso(), item_id, AWAITING_APPROVAL),
        )
    return res.rowcount == 1


def retry_item(conn, queue: str, item_id: int) -> bool:
    """Put a failed or exhausted item back in play with a fresh attempt budget."""
    table = _queue_name(queue)
    extra = ""
    if table == "research_queue":
        extra = (", retry_count = 0, no_data_rounds = 0, sources_tried = '[]',"
                 " exhaustion_reason = NULL, last_retry_at = NULL")
    with write_txn(conn):
        res = conn.execute(
            f"""UPDATE {table}
                SET status = ?, attempts = 0, last_error = NULL, error_kind = NULL,
                    lock_owner = NULL, lease_expiry = NULL, updated_at = ?{extra}
                WHERE id = ? AND status IN (?, ?)""",
            (PENDING, now_iso(), item_id, FAILED, EXHAUSTED),
        )
    return res.rowcount == 1


# ---------- Queries ----------
def list_items(conn, queue: str, status: Optional[str] = None, limit: int = 50) -> Iterable[sqlite3.Row]:
    table = _queue_name(queue)
    if status:
        if status not in STATUSES:
            raise ValueError(f"Unknown status '{status}'")
        return conn.execute(
            f"SELECT * FROM {table} WHERE status=? ORDER BY created_at ASC LIMIT ?",
            (status, limit),
        ).fetchall()
    return conn.execute(
        f"SELECT * FROM {table} ORDER BY created_at DESC LIMIT ?", (limit,)
    ).fetchall()


def counts(conn) -> Dict[str, Dict[str, int]]:
    out = {}
    for table in QUEUE_TABLES:
        per_status = {s: 0 for s in STATUSES}
        for r in conn.execute(
            f"SELECT status, COUNT(1) AS c FROM {table} GROUP BY status"
        ).fetchall():
            per_status[r["status"]] = r["c"]
        out[table] = per_status
    return out


def total_backlog(queue_counts: Dict[str, Dict[str, int]]) -> int:
    return sum(queue_counts.get(t, {}).get(PENDING, 0) for t in FORWARD_QUEUES)
