from leadctl.config import DEFAULT_CONFIG, QUEUE_TABLES, STAGES
from leadctl.db import MIGRATIONS, connect_db, init_db, schema_version
from leadctl.repository import get_config, get_worker_records, is_system_running


def _tables(conn):
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {r["name"] for r in rows}


def test_init_creates_schema_and_seeds(conn):
    tables = _tables(conn)
    for t in QUEUE_TABLES + ("worker_status", "system_state", "config", "schema_migrations"):
        assert t in tables
    assert schema_version(conn) == MIGRATIONS[-1][0]
    assert get_config(conn) == DEFAULT_CONFIG
    assert {r.name for r in get_worker_records(conn)} == set(STAGES)
    assert is_system_running(conn)


def test_migrations_are_idempotent(db_path):
    assert init_db(db_path) == []
    assert init_db(db_path) == []
    conn = connect_db(db_path)
    try:
        rows = conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()
        assert [r["version"] for r in rows] == [v for v, _, _ in MIGRATIONS]
    finally:
        conn.close()


def test_fresh_database_gets_every_migration(tmp_path):
    path = str(tmp_path / "fresh.db")
    assert init_db(path) == [v for v, _, _ in MIGRATIONS]


def test_connect_with_migrate(tmp_path):
    conn = connect_db(str(tmp_path / "other.db"), migrate=True)
    try:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        cols = {r["name"] for r in conn.execute("PRAGMA table_info(research_queue)")}
        assert {"retry_count", "sources_tried", "no_data_rounds",
                "exhaustion_reason", "last_retry_at", "current_quality"} <= cols
    finally:
        conn.close()


def test_seed_keeps_operator_config(db_path, conn):
    conn.execute("UPDATE config SET value = '9' WHERE key = 'research.target_quality'")
    conn.commit()
    init_db(db_path)
    assert get_config(conn)["research.target_quality"] == "9"
