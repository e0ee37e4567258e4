"""Stage workers.

One ``StageWorker`` drains one stage's queue: it leases items, runs the
stage handler, routes the outcome and settles the lease. A worker never
shares a connection across threads; batch items run on a thread pool and
each pool thread opens its own connection to the ledger.
"""
import os
import signal
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from . import deepening
from .config import STAGES, cfg_float, cfg_int, stage_settings
from .db import connect_db
from .gate import QualityGate
from .handlers import Handler, load_handler
from .heartbeat import HeartbeatRecorder
from .lease import LeaseQueue
from .log import configure_logging
from .models import (
    COMPLETED, PENDING, SKIPPED, Advance, Park, QueueItem, Requeue, Scored, Skip,
    ValidationError,
)
from .repository import (
    get_config, is_system_running, is_worker_enabled, record_send, sends_today,
)
from .utils import utcnow

logger = structlog.get_logger(__name__)

# Stages whose acquire needs an extra filter on top of status and lease.
ELIGIBILITY = {
    "deepening": deepening.eligibility,
}


class StageWorker:
    def __init__(
        self,
        stage: str,
        db_path: str,
        *,
        handler: Optional[Handler] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.db_path = db_path
        self.clock = clock
        # Built in one thread, driven from the thread that calls run().
        self.conn = connect_db(db_path, check_same_thread=False)
        self.cfg = get_config(self.conn)
        self.settings = stage_settings(self.cfg, stage)
        self.spec = self.settings.spec
        self.handler = handler or load_handler(self.settings.handler, self.cfg)
        self.gate = (
            QualityGate(self.settings.threshold, self.spec.on_low)
            if self.settings.threshold is not None else None
        )
        self.worker_id = worker_id or f"{stage}-{os.getpid()}"
        self.stop_event = stop_event or threading.Event()
        self.heartbeat = HeartbeatRecorder(
            stage, db_path,
            interval=cfg_float(self.cfg, "heartbeat.interval_seconds"),
            clock=clock,
        )
        self.log = logger.bind(stage=stage, worker=self.worker_id)
        self._where = None
        self._where_params = None
        if stage in ELIGIBILITY:
            self._where, self._where_params = ELIGIBILITY[stage](self.cfg)
        self._owner_thread = threading.get_ident()
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.settings.batch_size > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.batch_size,
                thread_name_prefix=f"{stage}-batch",
            )

    @property
    def name(self) -> str:
        return self.settings.name

    # ---------- connections / queues ----------
    def _thread_conn(self) -> sqlite3.Connection:
        if threading.get_ident() == self._owner_thread:
            return self.conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = connect_db(self.db_path, check_same_thread=False)
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def source_queue(self, conn: Optional[sqlite3.Connection] = None) -> LeaseQueue:
        return LeaseQueue(
            conn or self.conn,
            self.spec.queue,
            lease_seconds=self.settings.lease_seconds,
            order_by=self.settings.order_by,
            ready_status=self.spec.ready_status,
            hold_status=self.spec.hold_status,
            where=self._where,
            where_params=self._where_params,
            clock=self.clock,
        )

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _next_max_attempts(self) -> int:
        for name, spec in STAGES.items():
            if spec.queue == self.spec.next_queue and spec.ready_status == PENDING:
                return max(1, cfg_int(self.cfg, f"{name}.max_attempts"))
        return 3

    # ---------- one cycle ----------
    def run_once(self) -> int:
        """Lease and process up to ``batch_size`` items.

        Returns the number of items processed, or -1 when the system is
        paused or this stage is disabled. A stage that has used up its daily
        send cap also returns -1 until the next UTC day.
        """
        if not is_system_running(self.conn) or not is_worker_enabled(self.conn, self.name):
            return -1
        limit = self.settings.batch_size
        if self.settings.daily_limit:
            sent = sends_today(self.conn, self._today())
            if sent >= self.settings.daily_limit:
                self.log.warning("daily_limit_reached", sent_today=sent,
                                 daily_limit=self.settings.daily_limit)
                return -1
            limit = min(limit, self.settings.daily_limit - sent)
        items = self.source_queue().acquire_batch(self.worker_id, limit)
        if not items:
            return 0
        if self._executor is None or len(items) == 1:
            for item in items:
                self.process(item)
        else:
            list(self._executor.map(self.process, items))
        return len(items)

    def process(self, item: QueueItem):
        conn = self._thread_conn()
        source = self.source_queue(conn)
        log = self.log.bind(item_id=item.id, company=item.company_name, attempt=item.attempts + 1)
        self.heartbeat.set_current(item)
        try:
            try:
                outcome = self.handler(item)
                if isinstance(outcome, Scored):
                    outcome = self._gate(outcome)
                self._apply(conn, source, item, outcome, log)
                self.heartbeat.incr_processed()
            except ValidationError as e:
                self.heartbeat.incr_errors()
                status, attempts = source.fail(
                    item.id, str(e), max_attempts=1, kind="validation", owner=self.worker_id
                )
                log.warning("item_invalid", error=str(e), status=status)
            except sqlite3.Error:
                raise
            except Exception as e:
                self.heartbeat.incr_errors()
                status, attempts = source.fail(item.id, str(e), owner=self.worker_id)
                log.warning("item_failed", error=str(e), error_type=type(e).__name__,
                            status=status, attempts=attempts)
        except sqlite3.Error as e:
            # The lease expires on its own and another worker picks the item up.
            self.heartbeat.incr_errors()
            log.error("ledger_error", error=str(e))
        finally:
            self.heartbeat.clear_current(item)

    def _gate(self, scored: Scored):
        if self.gate is None:
            return Advance(payload=scored.payload, fields=scored.fields, quality=scored.score)
        return self.gate.decide(scored)

    def _apply(self, conn, source: LeaseQueue, item: QueueItem, outcome, log):
        if isinstance(outcome, Advance):
            fields = dict(outcome.fields)
            if self.spec.next_queue:
                downstream = LeaseQueue(conn, self.spec.next_queue, clock=self.clock)
                extra = {}
                if outcome.quality is not None and "quality" in downstream.columns():
                    extra["quality"] = outcome.quality
                next_id = downstream.insert(
                    item.company_name,
                    outcome.payload,
                    source_id=item.id,
                    status=self.settings.advance_status,
                    max_attempts=self._next_max_attempts(),
                    priority=int(item.get("priority", 0)),
                    fields=extra,
                )
                fields.setdefault("next_item_id", next_id)
                log.info("item_advanced", next_queue=self.spec.next_queue, next_id=next_id,
                         quality=outcome.quality, next_status=self.settings.advance_status)
            else:
                log.info("item_completed")
            if not source.complete(item.id, COMPLETED, fields, owner=self.worker_id):
                log.warning("lease_lost_on_complete")
            elif self.settings.daily_limit is not None:
                log.info("send_counted", sent_today=record_send(conn, self._today()))
        elif isinstance(outcome, Requeue):
            status, attempts = source.fail(item.id, outcome.reason, owner=self.worker_id)
            log.info("item_requeued", reason=outcome.reason, status=status, attempts=attempts)
        elif isinstance(outcome, Skip):
            source.complete(item.id, SKIPPED, {"last_error": outcome.reason}, owner=self.worker_id)
            log.info("item_skipped", reason=outcome.reason)
        elif isinstance(outcome, Park):
            fields = dict(outcome.fields)
            if outcome.reason:
                fields["last_error"] = outcome.reason
            source.complete(item.id, outcome.status, fields, owner=self.worker_id)
            log.info("item_parked", status=outcome.status, reason=outcome.reason)
        else:
            raise TypeError(f"Handler returned unsupported outcome {outcome!r}")

    # ---------- loop ----------
    def run(self):
        self._owner_thread = threading.get_ident()
        self.heartbeat.start()
        self.log.info("worker_started", poll_seconds=self.settings.poll_seconds,
                      batch_size=self.settings.batch_size)
        try:
            while not self.stop_event.is_set():
                try:
                    processed = self.run_once()
                except sqlite3.Error as e:
                    self.heartbeat.incr_errors()
                    self.log.error("ledger_error", error=str(e))
                    processed = 0
                if processed <= 0:
                    self.stop_event.wait(self.settings.poll_seconds)
        finally:
            self.close()
            self.log.info("worker_stopped")

    def stop(self):
        self.stop_event.set()

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.heartbeat.stop()
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns + [self.conn]:
            conn.close()


def setup_signal_handlers(stop_event: threading.Event, name: str):
    def _handler(signum, frame):
        logger.info("signal_received", worker=name, signal=signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def run_stage_process(stage: str, db_path: str):
    """Entry point of a supervised worker process."""
    configure_logging()
    stop_event = threading.Event()
    setup_signal_handlers(stop_event, stage)
    worker = StageWorker(stage, db_path, stop_event=stop_event)
    worker.run()
