import itertools
import os
import signal
import sqlite3
import time

import pytest

from leadctl import supervisor as supervisor_module
from leadctl.lease import LeaseQueue
from leadctl.models import COMPLETED, CRASHED, STOPPED, UnknownStage
from leadctl.repository import (
    get_worker_records, set_system_running, set_worker_enabled, set_worker_state, submit_reply,
)
from leadctl.supervisor import RestartPolicy, Supervisor

_pids = itertools.count(1000)


class FakeProcess:
    def __init__(self, stage, db_path):
        self.stage = stage
        self.pid = next(_pids)
        self.exitcode = None
        self.terminated = False
        self.killed = False
        self._alive = False
        self.ignore_term = False

    def start(self):
        self._alive = True

    def is_alive(self):
        return self._alive

    def exit(self, code):
        self._alive = False
        self.exitcode = code

    def terminate(self):
        self.terminated = True
        if not self.ignore_term:
            self.exit(0)

    def kill(self):
        self.killed = True
        self.exit(-9)

    def join(self, timeout=None):
        pass


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def spawned():
    return []


@pytest.fixture
def make_supervisor(db_path, spawned):
    sups = []

    def factory(stage, path):
        proc = FakeProcess(stage, path)
        spawned.append(proc)
        return proc

    def _make(stages=("research",), **kwargs):
        clock = kwargs.pop("clock", Clock())
        sup = Supervisor(db_path, stages=list(stages), process_factory=factory,
                         clock=clock, stagger=0, **kwargs)
        sups.append(sup)
        return sup, clock

    yield _make
    for sup in sups:
        sup.stop()


def _status(conn, name):
    return {r.name: r.status for r in get_worker_records(conn)}[name]


def test_policy_backoff_is_capped():
    policy = RestartPolicy(delay=5, delay_max=30)
    assert [policy.backoff(n) for n in range(0, 6)] == [5, 5, 10, 20, 30, 30]


def test_start_spawns_one_process_per_stage(make_supervisor, spawned):
    sup, _ = make_supervisor(stages=("discovery", "research"))
    sup.start()
    assert [p.stage for p in spawned] == ["discovery", "research"]
    assert all(p.is_alive() for p in spawned)


def test_autostart_config_picks_stages(db_path, configure):
    configure(replies__autostart="false")
    sup = Supervisor(db_path, process_factory=lambda s, p: FakeProcess(s, p))
    try:
        assert "replies" not in sup.workers
        assert "research" in sup.workers
    finally:
        sup.stop()


def test_crashed_worker_restarts_after_delay(make_supervisor, spawned):
    sup, clock = make_supervisor()
    sup.start()
    clock.now = 100.0
    spawned[0].exit(1)

    sup.poll()
    assert len(spawned) == 1
    sup.poll(now=104.9)
    assert len(spawned) == 1
    sup.poll(now=105.0)
    assert len(spawned) == 2
    assert spawned[1].is_alive()
    assert sup.workers["research"].restarts == 1


def test_rapid_crashes_back_off(make_supervisor, spawned):
    sup, clock = make_supervisor()
    sup.start()
    delays = []
    for _ in range(3):
        crash_at = clock.now + 1
        clock.now = crash_at
        spawned[-1].exit(1)
        sup.poll()
        delays.append(sup.workers["research"].restart_at - crash_at)
        clock.now = sup.workers["research"].restart_at
        sup.poll()
    assert delays == [5, 10, 20]
    assert len(spawned) == 4


def test_stable_run_resets_backoff(make_supervisor, spawned):
    sup, clock = make_supervisor()
    sup.start()
    clock.now = 1
    spawned[-1].exit(1)
    sup.poll()
    clock.now = sup.workers["research"].restart_at
    sup.poll()
    assert sup.workers["research"].rapid_crashes == 1

    clock.now += 600
    spawned[-1].exit(1)
    sup.poll()
    assert sup.workers["research"].rapid_crashes == 0
    assert sup.workers["research"].restart_at == clock.now + 5


def test_crash_loop_marks_worker_crashed(conn, configure, make_supervisor, spawned):
    configure(supervisor__max_rapid_restarts=3)
    sup, clock = make_supervisor()
    sup.start()
    for _ in range(3):
        clock.now += 1
        spawned[-1].exit(1)
        sup.poll()
        if sup.workers["research"].restart_at is not None:
            clock.now = sup.workers["research"].restart_at
            sup.poll()

    assert sup.workers["research"].crashed
    assert _status(conn, "research") == CRASHED
    count = len(spawned)
    sup.poll(now=clock.now + 10_000)
    assert len(spawned) == count

    # What `leadctl restart research` does.
    set_worker_state(conn, "research", STOPPED)
    sup.poll()
    assert len(spawned) == count + 1
    assert not sup.workers["research"].crashed
    assert sup.workers["research"].rapid_crashes == 0


def test_clean_exit_is_restarted_too(make_supervisor, spawned):
    # A worker that got SIGTERM from anyone but the supervisor exits 0.
    sup, clock = make_supervisor()
    sup.start()
    clock.now = 3.0
    spawned[0].exit(0)
    sup.poll()
    assert sup.workers["research"].restart_at == 8.0
    sup.poll(now=8.0)
    assert len(spawned) == 2
    assert spawned[1].is_alive()


def test_crash_stays_recorded_when_ledger_write_fails(conn, configure, make_supervisor, spawned,
                                                     monkeypatch):
    configure(supervisor__max_rapid_restarts=1)
    sup, clock = make_supervisor()
    sup.start()

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(supervisor_module, "set_worker_state", locked)
    clock.now = 1
    spawned[0].exit(1)
    sup.poll()
    w = sup.workers["research"]
    assert w.crashed
    assert not w.crash_recorded

    sup.poll(now=10_000)
    assert len(spawned) == 1
    assert w.crashed

    monkeypatch.undo()
    sup.poll(now=10_001)
    assert w.crash_recorded
    assert _status(conn, "research") == CRASHED
    sup.poll(now=10_002)
    assert len(spawned) == 1


def test_disabled_stage_is_not_spawned_until_enabled(conn, make_supervisor, spawned):
    set_worker_enabled(conn, "drafting", False)
    sup, clock = make_supervisor(stages=("research", "drafting"))
    sup.start()
    assert [p.stage for p in spawned] == ["research"]
    sup.poll(now=100)
    assert len(spawned) == 1

    set_worker_enabled(conn, "drafting", True)
    sup.poll(now=101)
    assert [p.stage for p in spawned] == ["research", "drafting"]
    assert sup.workers["drafting"].restarts == 0


def test_stop_terminates_and_does_not_restart(make_supervisor, spawned):
    sup, clock = make_supervisor(stages=("research", "drafting"))
    sup.start()
    spawned[1].ignore_term = True
    sup.stop()
    assert all(p.terminated for p in spawned)
    assert spawned[1].killed
    assert not spawned[0].killed
    sup.poll(now=clock.now + 10_000)
    assert len(spawned) == 2


def test_restart_unknown_stage(make_supervisor):
    sup, _ = make_supervisor()
    with pytest.raises(UnknownStage):
        sup.restart("discovery")
    with pytest.raises(UnknownStage):
        make_supervisor(stages=("nope",))


def test_health_check_runs_on_interval(make_supervisor, configure):
    configure(health__interval_seconds=60)
    sup, clock = make_supervisor()
    sup.start()
    assert sup.check_health(now=10) is None
    snap = sup.check_health(now=60)
    assert snap["system_health"] == "HEALTHY"
    assert sup.check_health(now=61) is None
    assert sup.check_health(now=121) is not None


def _poll_until(sup, condition, timeout):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        sup.poll()
        if condition():
            return time.monotonic()
        time.sleep(0.05)
    pytest.fail(f"condition not met within {timeout}s")


@pytest.mark.timeout(60)
def test_killed_worker_process_is_respawned_and_its_lease_reclaimed(db_path, conn, configure):
    configure(
        supervisor__restart_delay_seconds=1,
        replies__poll_seconds=0.1,
        replies__lease_seconds=1,
        heartbeat__interval_seconds=0.2,
    )
    set_system_running(conn, False)
    item_id = submit_reply(conn, from_email="ceo@acme.io", subject="Re: intro",
                           body="Sounds good, let's talk next week.")
    sup = Supervisor(db_path, stages=["replies"], tick=0.05, stagger=0)
    try:
        sup.start()
        first = sup.workers["replies"].process
        assert first.is_alive()

        # The item is mid-flight in the process that is about to die.
        queue = LeaseQueue(conn, "reply_queue", lease_seconds=1)
        assert queue.acquire(f"replies-{first.pid}").id == item_id

        killed_at = time.monotonic()
        os.kill(first.pid, signal.SIGTERM)
        respawned_at = _poll_until(
            sup, lambda: sup.workers["replies"].process not in (None, first), timeout=10
        )
        second = sup.workers["replies"].process
        assert second.pid != first.pid
        assert 1.0 <= respawned_at - killed_at < 1.0 + 2.5
        assert sup.workers["replies"].restarts == 1

        set_system_running(conn, True)
        _poll_until(sup, lambda: queue.get(item_id).status == COMPLETED, timeout=15)
        item = queue.get(item_id)
        assert item.lock_owner is None
        assert item.payload["category"] == "INTERESTED"
    finally:
        sup.stop()
