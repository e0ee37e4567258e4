"""Keeps one worker process per stage alive.

Restarts are driven only by observed process exit. A worker that keeps
dying shortly after start is restarted with exponential backoff and, after
``supervisor.max_rapid_restarts`` rapid crashes in a row, is left down and
marked ``crashed`` until an operator runs ``leadctl restart <stage>``.
Stages switched off with ``leadctl disable`` are not spawned until they are
enabled again.
"""
import multiprocessing
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import structlog

from .config import STAGES, cfg_bool, cfg_float, cfg_int
from .db import connect_db
from .heartbeat import health_snapshot
from .models import CRASHED, STOPPED, UnknownStage
from .repository import get_config, get_worker_records, is_worker_enabled, set_worker_state
from .worker import run_stage_process

logger = structlog.get_logger(__name__)

ProcessFactory = Callable[[str, str], Any]


def spawn_process(stage: str, db_path: str):
    return multiprocessing.Process(
        target=run_stage_process, args=(stage, db_path), name=f"leadctl-{stage}", daemon=False
    )


@dataclass(frozen=True)
class RestartPolicy:
    delay: float = 5.0
    delay_max: float = 300.0
    stable_after: float = 60.0
    max_rapid_restarts: int = 5

    @classmethod
    def from_config(cls, cfg: Mapping[str, str]) -> "RestartPolicy":
        return cls(
            delay=max(0.0, cfg_float(cfg, "supervisor.restart_delay_seconds")),
            delay_max=max(0.0, cfg_float(cfg, "supervisor.restart_delay_max_seconds")),
            stable_after=max(0.0, cfg_float(cfg, "supervisor.stable_after_seconds")),
            max_rapid_restarts=max(1, cfg_int(cfg, "supervisor.max_rapid_restarts")),
        )

    def backoff(self, rapid_crashes: int) -> float:
        exponent = max(0, rapid_crashes - 1)
        return min(self.delay_max, self.delay * (2 ** exponent))


@dataclass
class ManagedWorker:
    stage: str
    process: Any = None
    started_at: Optional[float] = None
    rapid_crashes: int = 0
    restarts: int = 0
    restart_at: Optional[float] = None
    crashed: bool = False
    crash_recorded: bool = False

    def alive(self) -> bool:
        return self.process is not None and self.process.is_alive()


class Supervisor:
    def __init__(
        self,
        db_path: str,
        *,
        stages: Optional[Iterable[str]] = None,
        process_factory: ProcessFactory = spawn_process,
        clock: Callable[[], float] = time.monotonic,
        stop_event: Optional[threading.Event] = None,
        tick: float = 0.5,
        stagger: float = 0.5,
    ):
        self.db_path = db_path
        self.process_factory = process_factory
        self.clock = clock
        self.stop_event = stop_event or threading.Event()
        self.tick = tick
        self.stagger = stagger
        self.conn = connect_db(db_path)
        self.cfg = get_config(self.conn)
        self.policy = RestartPolicy.from_config(self.cfg)
        self.health_interval = max(1.0, cfg_float(self.cfg, "health.interval_seconds"))
        self.shutdown_grace = max(0.0, cfg_float(self.cfg, "supervisor.shutdown_grace_seconds"))
        if stages is None:
            stages = [s for s in STAGES if cfg_bool(self.cfg, f"{s}.autostart")]
        for stage in stages:
            if stage not in STAGES:
                raise UnknownStage(f"Unknown stage '{stage}'. Known: {', '.join(STAGES)}")
        self.workers: Dict[str, ManagedWorker] = {s: ManagedWorker(s) for s in stages}
        self.stopping = False
        self._next_health: Optional[float] = None

    # ---------- lifecycle ----------
    def start(self):
        logger.info("supervisor_starting", stages=list(self.workers))
        spawned = 0
        for stage in self.workers:
            if not is_worker_enabled(self.conn, stage):
                # Picked up by poll() once `leadctl enable` flips the switch.
                logger.info("worker_disabled", stage=stage)
                continue
            if spawned and self.stagger:
                self.stop_event.wait(self.stagger)
            self.spawn(stage)
            spawned += 1
        self._next_health = self.clock() + self.health_interval

    def spawn(self, stage: str):
        w = self.workers[stage]
        proc = self.process_factory(stage, self.db_path)
        proc.start()
        w.process = proc
        w.started_at = self.clock()
        w.restart_at = None
        logger.info("worker_spawned", stage=stage, pid=getattr(proc, "pid", None),
                    restarts=w.restarts)

    def poll(self, now: Optional[float] = None):
        """One supervision pass: reap exited workers and run due restarts."""
        now = self.clock() if now is None else now
        if self.stopping:
            return
        ledger_states = None
        for stage, w in self.workers.items():
            if w.crashed:
                if not w.crash_recorded:
                    w.crash_recorded = self._mark(stage, CRASHED)
                    continue
                if ledger_states is None:
                    ledger_states = {r.name: r.status for r in get_worker_records(self.conn)}
                if ledger_states.get(stage) != CRASHED:
                    logger.info("crashed_worker_released", stage=stage)
                    self.restart(stage)
                continue
            if w.process is not None and not w.process.is_alive():
                self._on_exit(w, now)
            if w.process is None and (w.restart_at is None or now >= w.restart_at):
                if not is_worker_enabled(self.conn, stage):
                    continue
                if w.started_at is not None:
                    w.restarts += 1
                self.spawn(stage)

    def _on_exit(self, w: ManagedWorker, now: float):
        proc, w.process = w.process, None
        proc.join(0)
        code = proc.exitcode
        lived = now - (w.started_at or now)
        if self.stopping:
            return
        # Only stop() ends a worker on purpose; any other exit, clean or not, is restarted.
        if lived < self.policy.stable_after:
            w.rapid_crashes += 1
        else:
            w.rapid_crashes = 0
        if w.rapid_crashes >= self.policy.max_rapid_restarts:
            w.crashed = True
            logger.error("worker_crash_loop", stage=w.stage, exitcode=code,
                         rapid_crashes=w.rapid_crashes)
            w.crash_recorded = self._mark(w.stage, CRASHED)
            return
        delay = self.policy.backoff(w.rapid_crashes)
        w.restart_at = now + delay
        logger.warning("worker_exited", stage=w.stage, exitcode=code, lived=round(lived, 3),
                       restart_in=delay, rapid_crashes=w.rapid_crashes)

    def _mark(self, stage: str, status: str) -> bool:
        try:
            set_worker_state(self.conn, stage, status)
        except sqlite3.Error as e:
            logger.error("worker_state_update_failed", stage=stage, error=str(e))
            return False
        return True

    def restart(self, stage: str):
        """Clear the crash state of a stage and start it again if it is down."""
        if stage not in self.workers:
            raise UnknownStage(f"Stage '{stage}' is not supervised")
        w = self.workers[stage]
        w.crashed = False
        w.crash_recorded = False
        w.rapid_crashes = 0
        w.restart_at = None
        self._mark(stage, STOPPED)
        if not w.alive():
            w.restarts += 1
            self.spawn(stage)

    def check_health(self, now: Optional[float] = None):
        now = self.clock() if now is None else now
        if self._next_health is not None and now < self._next_health:
            return None
        self._next_health = now + self.health_interval
        snapshot = health_snapshot(self.conn)
        workers = snapshot.get("workers", {})
        stale = sorted(n for n, w in workers.items() if w.get("health") == "stale")
        log = logger.warning if stale or snapshot["system_health"] in ("STRESSED", "UNKNOWN") \
            else logger.info
        log("health_check", system_health=snapshot["system_health"],
            backlog=snapshot.get("backlog"), stale=stale,
            crashed=sorted(n for n, w in self.workers.items() if w.crashed))
        return snapshot

    def run(self):
        self.start()
        try:
            while not self.stop_event.is_set():
                try:
                    self.poll()
                    self.check_health()
                except sqlite3.Error as e:
                    logger.error("supervisor_ledger_error", error=str(e))
                self.stop_event.wait(self.tick)
        finally:
            self.stop()

    def stop(self):
        """SIGTERM every worker, wait out the grace period, then kill stragglers."""
        self.stopping = True
        self.stop_event.set()
        alive = [w for w in self.workers.values() if w.alive()]
        for w in alive:
            logger.info("worker_terminating", stage=w.stage, pid=getattr(w.process, "pid", None))
            w.process.terminate()
        deadline = self.clock() + self.shutdown_grace
        for w in alive:
            w.process.join(max(0.0, deadline - self.clock()))
            if w.process.is_alive():
                logger.warning("worker_killed", stage=w.stage, pid=getattr(w.process, "pid", None))
                w.process.kill()
                w.process.join(5)
            w.process = None
        self.conn.close()
        logger.info("supervisor_stopped")
