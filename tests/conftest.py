from datetime import datetime, timedelta, timezone

import pytest

from leadctl.db import connect_db, init_db
from leadctl.lease import LeaseQueue
from leadctl.repository import set_config


class FakeClock:
    """Wall clock for lease tests; advance it instead of sleeping."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "ledger.db")
    init_db(path)
    return path


@pytest.fixture
def conn(db_path):
    c = connect_db(db_path)
    yield c
    c.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def configure(conn):
    def _set(**values):
        for key, value in values.items():
            set_config(conn, key.replace("__", "."), str(value))
    return _set


@pytest.fixture
def enqueue(conn):
    def _insert(table, company="Acme", payload=None, **kwargs):
        return LeaseQueue(conn, table).insert(company, payload or {}, **kwargs)
    return _insert
