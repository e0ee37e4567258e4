import sqlite3
from contextlib import contextmanager
from typing import List, Optional, Tuple

from .config import DEFAULT_CONFIG, STAGES, db_path_from_env
from .utils import now_iso

BUSY_TIMEOUT_SECONDS = 30.0

_QUEUE_COLUMNS = """
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    status TEXT NOT NULL DEFAULT 'pending',
    lock_owner TEXT,
    lease_expiry TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    error_kind TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    source_id INTEGER UNIQUE,
    company_name TEXT NOT NULL DEFAULT '',
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT"""


def _queue_table(name: str, extra: str = "") -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {name} ({_QUEUE_COLUMNS}{extra}\n);\n"
        f"CREATE INDEX IF NOT EXISTS idx_{name}_status ON {name}(status, lease_expiry);\n"
    )


# Ordered, append-only. Each entry runs once and is recorded in schema_migrations.
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "queue tables", "".join([
        _queue_table("prospect_queue", ",\n    website_url TEXT"),
        _queue_table("research_queue", ",\n    current_quality REAL NOT NULL DEFAULT 0"),
        _queue_table("draft_queue", ",\n    quality REAL"),
        _queue_table("email_queue", ",\n    quality REAL,\n    approved_by TEXT"),
        _queue_table("reply_queue"),
    ])),
    (2, "deepening bookkeeping", """
ALTER TABLE research_queue ADD COLUMN retry_count INTEGER NOT NULL DEFAULT 0;
ALTER TABLE research_queue ADD COLUMN sources_tried TEXT NOT NULL DEFAULT '[]';
ALTER TABLE research_queue ADD COLUMN no_data_rounds INTEGER NOT NULL DEFAULT 0;
ALTER TABLE research_queue ADD COLUMN exhaustion_reason TEXT;
ALTER TABLE research_queue ADD COLUMN last_retry_at TEXT;
"""),
    (3, "workers, system state and config", """
CREATE TABLE IF NOT EXISTS worker_status (
    name TEXT PRIMARY KEY,
    enabled INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'stopped',
    last_heartbeat TEXT,
    processed_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    current_item TEXT
);
CREATE TABLE IF NOT EXISTS system_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    is_running INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""),
    (4, "daily send counter", """
ALTER TABLE system_state ADD COLUMN sent_today INTEGER NOT NULL DEFAULT 0;
ALTER TABLE system_state ADD COLUMN sent_date TEXT;
"""),
]


def _statements(script: str):
    for stmt in script.split(";"):
        s = stmt.strip()
        if s:
            yield s + ";"


def connect_db(
    path: Optional[str] = None, *, migrate: bool = False, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open a connection to the ledger. Each thread and process opens its own."""
    conn = sqlite3.connect(
        path or db_path_from_env(),
        timeout=BUSY_TIMEOUT_SECONDS,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    if migrate:
        apply_migrations(conn)
    return conn


def schema_version(conn) -> int:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        "version INTEGER PRIMARY KEY, name TEXT NOT NULL, applied_at TEXT NOT NULL)"
    )
    row = conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
    return row["v"] or 0


@contextmanager
def write_txn(conn):
    """BEGIN IMMEDIATE ... COMMIT. The write lock is held for the whole block."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def apply_migrations(conn) -> List[int]:
    applied = []
    with write_txn(conn):
        current = schema_version(conn)
        for version, name, script in MIGRATIONS:
            if version <= current:
                continue
            for stmt in _statements(script):
                conn.execute(stmt)
            conn.execute(
                "INSERT INTO schema_migrations(version, name, applied_at) VALUES (?,?,?)",
                (version, name, now_iso()),
            )
            applied.append(version)
        _seed(conn)
    return applied


def _seed(conn):
    ts = now_iso()
    for k, v in DEFAULT_CONFIG.items():
        conn.execute("INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v))
    for name in STAGES:
        conn.execute(
            "INSERT OR IGNORE INTO worker_status(name, enabled, status) VALUES (?, 1, 'stopped')",
            (name,),
        )
    conn.execute(
        "INSERT OR IGNORE INTO system_state(id, is_running, updated_at) VALUES (1, 1, ?)",
        (ts,),
    )


def init_db(path: Optional[str] = None) -> List[int]:
    conn = connect_db(path)
    try:
        return apply_migrations(conn)
    finally:
        conn.close()
