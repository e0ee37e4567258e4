"""Lease primitive shared by every stage.

A ``LeaseQueue`` wraps one queue table. ``acquire`` is the only point where
workers race each other and it is a single ``UPDATE ... RETURNING`` statement;
``complete`` and ``fail`` only ever touch the row they were given.
"""
import json
import re
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from .config import QUEUE_TABLES
from .db import write_txn
from .models import (
    COMPLETED, FAILED, PENDING, PROCESSING, TERMINAL_STATUSES, QueueItem,
)
from .utils import dumps, to_iso, utcnow

logger = structlog.get_logger(__name__)

ORDER_BY_RE = re.compile(
    r"(?i)^\s*[a-z_]+(?:\s+(?:asc|desc))?(?:\s*,\s*[a-z_]+(?:\s+(?:asc|desc))?)*\s*$"
)

# Columns callers may not overwrite through extra_fields.
_PROTECTED = {"id", "status", "lock_owner", "lease_expiry", "attempts", "created_at", "updated_at"}


def _encode(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple, set)):
        return dumps(sorted(value) if isinstance(value, set) else value)
    return value


class LeaseQueue:
    def __init__(
        self,
        conn: sqlite3.Connection,
        table: str,
        *,
        lease_seconds: float = 300,
        order_by: str = "created_at ASC",
        ready_status: str = PENDING,
        hold_status: Optional[str] = PROCESSING,
        where: Optional[str] = None,
        where_params: Optional[Callable[[datetime], Dict[str, Any]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if table not in QUEUE_TABLES:
            raise ValueError(f"Unknown queue table '{table}'")
        if not ORDER_BY_RE.match(order_by):
            raise ValueError(f"Invalid order policy: {order_by!r}")
        self.conn = conn
        self.table = table
        self.lease_seconds = lease_seconds
        self.order_by = order_by
        self.ready_status = ready_status
        self.hold_status = hold_status
        self.where = where
        self.where_params = where_params
        self.clock = clock
        self._columns: Optional[List[str]] = None
        unknown = [c.split()[0] for c in order_by.split(",") if c.split()[0] not in self.columns()]
        if unknown:
            raise ValueError(f"Unknown order column(s) for {table}: {', '.join(unknown)}")

    def columns(self) -> List[str]:
        if self._columns is None:
            rows = self.conn.execute(f"PRAGMA table_info({self.table})").fetchall()
            self._columns = [r["name"] for r in rows]
        return self._columns

    # ---------- acquire ----------
    def _eligible(self) -> str:
        clause = (
            "((status = :ready AND (lease_expiry IS NULL OR lease_expiry <= :now))"
            " OR (status = :hold AND lease_expiry IS NOT NULL AND lease_expiry <= :now))"
        )
        if self.where:
            clause += f" AND ({self.where})"
        return clause

    def acquire(self, worker_id: str) -> Optional[QueueItem]:
        now = self.clock()
        params = {
            "ready": self.ready_status,
            "hold": self.hold_status or self.ready_status,
            "now": to_iso(now),
            "owner": worker_id,
            "expiry": to_iso(now + timedelta(seconds=self.lease_seconds)),
        }
        if self.where_params:
            params.update(self.where_params(now))
        eligible = self._eligible()
        sql = (
            f"UPDATE {self.table} "
            "SET status = :hold, lock_owner = :owner, lease_expiry = :expiry, updated_at = :now "
            f"WHERE id = (SELECT id FROM {self.table} WHERE {eligible} "
            f"ORDER BY {self.order_by} LIMIT 1) "
            f"AND {eligible} "
            "RETURNING *"
        )
        with write_txn(self.conn):
            rows = self.conn.execute(sql, params).fetchall()
        if not rows:
            return None
        return QueueItem.from_row(self.table, rows[0])

    def acquire_batch(self, worker_id: str, limit: int) -> List[QueueItem]:
        items = []
        for _ in range(max(1, limit)):
            item = self.acquire(worker_id)
            if item is None:
                break
            items.append(item)
        return items

    # ---------- complete / fail ----------
    def _split_fields(self, extra: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        columns = set(self.columns())
        direct, payload = {}, {}
        for key, value in extra.items():
            if key in _PROTECTED:
                raise ValueError(f"Field '{key}' is managed by the lease and cannot be set")
            if key in columns and key != "payload":
                direct[key] = _encode(value)
            else:
                payload[key] = value
        return direct, payload

    def complete(
        self,
        item_id: int,
        new_status: str = COMPLETED,
        extra_fields: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> bool:
        """Release the lease and settle the item. Returns False when the row is
        missing or ``owner`` no longer holds the lease. Settling an item that
        already has the target values is a no-op that returns True."""
        direct, payload_extra = self._split_fields(dict(extra_fields or {}))
        now = to_iso(self.clock())
        with write_txn(self.conn):
            row = self.conn.execute(
                f"SELECT * FROM {self.table} WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                return False
            try:
                payload = json.loads(row["payload"] or "{}")
            except ValueError:
                payload = {}
            payload.update(payload_extra)
            values = dict(direct)
            values.update({
                "status": new_status,
                "lock_owner": None,
                "lease_expiry": None,
                "payload": dumps(payload),
            })
            if new_status == COMPLETED:
                values["completed_at"] = row["completed_at"] or now
            if all(row[k] == v for k, v in values.items()):
                return True
            if owner is not None and row["lock_owner"] != owner:
                logger.warning("complete_lease_lost", queue=self.table, item_id=item_id,
                               owner=owner, holder=row["lock_owner"])
                return False
            values["updated_at"] = now
            assignments = ", ".join(f"{k} = :{k}" for k in values)
            values["_id"] = item_id
            self.conn.execute(
                f"UPDATE {self.table} SET {assignments} WHERE id = :_id", values
            )
        return True

    def fail(
        self,
        item_id: int,
        error: str,
        max_attempts: Optional[int] = None,
        *,
        kind: str = "transient",
        owner: Optional[str] = None,
    ) -> Tuple[str, int]:
        """Count a failed attempt. Returns the resulting (status, attempts).

        Terminal items are left untouched, so repeated calls past the cap are no-ops.
        """
        now = to_iso(self.clock())
        with write_txn(self.conn):
            row = self.conn.execute(
                f"SELECT status, attempts, max_attempts, lock_owner FROM {self.table} WHERE id = ?",
                (item_id,),
            ).fetchone()
            if row is None:
                raise LookupError(f"{self.table} item {item_id} not found")
            if row["status"] in TERMINAL_STATUSES:
                return row["status"], row["attempts"]
            if owner is not None and row["lock_owner"] != owner:
                logger.warning("fail_lease_lost", queue=self.table, item_id=item_id,
                               owner=owner, holder=row["lock_owner"])
                return row["status"], row["attempts"]
            cap = max_attempts if max_attempts is not None else row["max_attempts"]
            attempts = row["attempts"] + 1
            status = FAILED if attempts >= cap else self.ready_status
            self.conn.execute(
                f"""UPDATE {self.table}
                    SET status = ?, attempts = ?, last_error = ?, error_kind = ?,
                        lock_owner = NULL, lease_expiry = NULL, updated_at = ?
                    WHERE id = ?""",
                (status, attempts, (error or "")[:500], kind, now, item_id),
            )
        return status, attempts

    # ---------- insert / read ----------
    def insert(
        self,
        company_name: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source_id: Optional[int] = None,
        status: str = PENDING,
        max_attempts: int = 3,
        priority: int = 0,
        fields: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Insert a new item. With ``source_id`` the insert is idempotent: a second
        insert for the same upstream item returns the existing row's id."""
        direct, payload_extra = self._split_fields(dict(fields or {}))
        body = dict(payload or {})
        body.update(payload_extra)
        now = to_iso(self.clock())
        values = {
            "company_name": company_name or "",
            "payload": dumps(body),
            "status": status,
            "max_attempts": int(max_attempts),
            "priority": int(priority),
            "source_id": source_id,
            "created_at": now,
            "updated_at": now,
        }
        values.update(direct)
        cols = ", ".join(values)
        marks = ", ".join(f":{k}" for k in values)
        with write_txn(self.conn):
            cur = self.conn.execute(
                f"INSERT INTO {self.table} ({cols}) VALUES ({marks}) "
                "ON CONFLICT(source_id) DO NOTHING",
                values,
            )
            if cur.rowcount == 1:
                return cur.lastrowid
            row = self.conn.execute(
                f"SELECT id FROM {self.table} WHERE source_id = ?", (source_id,)
            ).fetchone()
        logger.info("insert_deduplicated", queue=self.table, source_id=source_id, item_id=row["id"])
        return row["id"]

    def get(self, item_id: int) -> Optional[QueueItem]:
        row = self.conn.execute(
            f"SELECT * FROM {self.table} WHERE id = ?", (item_id,)
        ).fetchone()
        return QueueItem.from_row(self.table, row) if row else None
