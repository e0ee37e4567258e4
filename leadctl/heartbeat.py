import json
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from .config import STAGES, cfg_int
from .db import connect_db
from .models import CRASHED, HEALTHY, RUNNING, STALE, STOPPED, QueueItem, WorkerRecord
from .repository import counts, get_config, get_worker_records, is_system_running, total_backlog
from .utils import parse_iso, to_iso, utcnow

logger = structlog.get_logger(__name__)


class HeartbeatRecorder:
    """Liveness and throughput counters for one worker.

    Counters live in memory and are flushed to ``worker_status`` every
    ``interval`` seconds from a background thread with its own connection.
    Flushes add deltas, so the stored counters are cumulative across restarts.
    """

    def __init__(self, name: str, db_path: str, interval: float = 30.0,
                 clock: Callable[[], datetime] = utcnow):
        self.name = name
        self.db_path = db_path
        self.interval = interval
        self.clock = clock
        self._lock = threading.Lock()
        self._processed = 0
        self._errors = 0
        self._current: Dict[str, Dict[str, Any]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- counters ----------
    def set_current(self, item: QueueItem):
        with self._lock:
            self._current[f"{item.queue}:{item.id}"] = {
                "queue": item.queue, "id": item.id, "company": item.company_name,
            }

    def clear_current(self, item: QueueItem):
        with self._lock:
            self._current.pop(f"{item.queue}:{item.id}", None)

    def incr_processed(self, n: int = 1):
        with self._lock:
            self._processed += n

    def incr_errors(self, n: int = 1):
        with self._lock:
            self._errors += n

    def current_item(self) -> Optional[str]:
        with self._lock:
            items = list(self._current.values())
        if not items:
            return None
        return json.dumps(items[0] if len(items) == 1 else items, sort_keys=True)

    # ---------- persistence ----------
    def register(self, conn):
        now = to_iso(self.clock())
        with conn:
            conn.execute(
                """INSERT INTO worker_status (name, status, last_heartbeat, started_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       status = excluded.status,
                       last_heartbeat = excluded.last_heartbeat,
                       started_at = excluded.started_at,
                       current_item = NULL""",
                (self.name, RUNNING, now, now),
            )

    def beat(self, conn) -> bool:
        with self._lock:
            processed, errors = self._processed, self._errors
            self._processed = self._errors = 0
        current = self.current_item()
        try:
            with conn:
                conn.execute(
                    """UPDATE worker_status
                       SET status = ?, last_heartbeat = ?,
                           processed_count = processed_count + ?,
                           error_count = error_count + ?,
                           current_item = ?
                       WHERE name = ?""",
                    (RUNNING, to_iso(self.clock()), processed, errors, current, self.name),
                )
        except sqlite3.Error as e:
            logger.warning("heartbeat_failed", worker=self.name, error=str(e))
            with self._lock:
                self._processed += processed
                self._errors += errors
            return False
        return True

    def start(self) -> "HeartbeatRecorder":
        conn = connect_db(self.db_path)
        try:
            self.register(conn)
        finally:
            conn.close()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{self.name}", daemon=True
        )
        self._thread.start()
        return self

    def _run(self):
        conn = connect_db(self.db_path)
        try:
            while not self._stop.wait(self.interval):
                self.beat(conn)
        finally:
            conn.close()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self.interval))
            self._thread = None
        conn = connect_db(self.db_path)
        try:
            self.beat(conn)
            with conn:
                conn.execute(
                    "UPDATE worker_status SET status = ?, current_item = NULL WHERE name = ?",
                    (STOPPED, self.name),
                )
        except sqlite3.Error as e:
            logger.warning("heartbeat_stop_failed", worker=self.name, error=str(e))
        finally:
            conn.close()


# ---------- health ----------
def classify_worker(record: Optional[WorkerRecord], now: datetime, stale_after: float) -> str:
    if record is None or not record.last_heartbeat:
        return STOPPED
    if record.status == CRASHED:
        return CRASHED
    if record.status != RUNNING:
        return STOPPED
    age = (now - parse_iso(record.last_heartbeat)).total_seconds()
    return HEALTHY if age <= stale_after else STALE


def classify_backlog(backlog: int, busy: int, stressed: int) -> str:
    if backlog > stressed:
        return "STRESSED"
    if backlog > busy:
        return "BUSY"
    return "HEALTHY"


def health_snapshot(conn, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Queue depths, per-worker health and overall system health.

    Reads straight from the ledger; if the ledger cannot be read the result
    says UNKNOWN instead of reporting anything cached.
    """
    now = now or utcnow()
    try:
        cfg = get_config(conn)
        queue_counts = counts(conn)
        records = {r.name: r for r in get_worker_records(conn)}
        running = is_system_running(conn)
    except sqlite3.Error as e:
        logger.error("health_snapshot_failed", error=str(e))
        return {
            "generated_at": to_iso(now),
            "system_health": "UNKNOWN",
            "running": None,
            "error": str(e),
            "queues": {},
            "workers": {},
        }

    stale_after = cfg_int(cfg, "heartbeat.stale_after_seconds")
    workers = {}
    for name in sorted(set(STAGES) | set(records)):
        record = records.get(name)
        entry = asdict(record) if record else asdict(WorkerRecord(name=name))
        entry["health"] = classify_worker(record, now, stale_after)
        workers[name] = entry

    backlog = total_backlog(queue_counts)
    return {
        "generated_at": to_iso(now),
        "system_health": classify_backlog(
            backlog,
            cfg_int(cfg, "health.busy_backlog"),
            cfg_int(cfg, "health.stressed_backlog"),
        ),
        "running": running,
        "backlog": backlog,
        "queues": queue_counts,
        "workers": workers,
    }
