import json

import pytest
from click.testing import CliRunner

from leadctl.cli import cli
from leadctl.lease import LeaseQueue
from leadctl.models import AWAITING_APPROVAL, CRASHED, FAILED, PENDING, STOPPED
from leadctl.repository import (
    get_config, get_worker_records, is_system_running, is_worker_enabled, set_worker_state,
)


@pytest.fixture
def run(db_path):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--db", db_path, *args])
    return _run


def test_init_reports_schema(run):
    result = run("init")
    assert result.exit_code == 0
    assert "schema v4" in result.output


def test_db_path_from_env(tmp_path, monkeypatch):
    path = str(tmp_path / "env.db")
    monkeypatch.setenv("LEADCTL_DB", path)
    result = CliRunner().invoke(cli, ["init"])
    assert result.exit_code == 0
    assert path in result.output


def test_submit_and_list(run, conn):
    result = run("submit", "--company", "Acme", "--website", "https://acme.io",
                 "--email", "jane@acme.io", "--priority", "2")
    assert result.exit_code == 0, result.output
    assert "Submitted prospect 1" in result.output

    row = conn.execute("SELECT * FROM prospect_queue WHERE id = 1").fetchone()
    assert row["website_url"] == "https://acme.io"
    assert row["priority"] == 2

    result = run("list", "--queue", "prospect")
    assert "Acme" in result.output
    assert run("list", "--queue", "research").output.strip() == "No items."


def test_submit_rejects_bad_website(run):
    result = run("submit", "--company", "Acme", "--website", "acme")
    assert result.exit_code == 1
    assert "Invalid website URL" in result.output


def test_submit_reply(run, conn):
    result = run("submit-reply", "--from", "jane@acme.io", "--subject", "Re: hi", "--body", "Sure")
    assert result.exit_code == 0
    assert conn.execute("SELECT COUNT(1) FROM reply_queue").fetchone()[0] == 1
    assert run("submit-reply", "--from", "nobody").exit_code == 1


def test_status_and_health(run, enqueue):
    enqueue("prospect_queue")
    status = json.loads(run("status").output)
    assert status["queues"]["prospect_queue"] == {"pending": 1}
    assert set(status["workers"]) >= {"discovery", "research"}
    assert status["deliveries"] == {"sent_today": 0, "daily_limit": 200}

    health = json.loads(run("health").output)
    assert health["system_health"] == "HEALTHY"
    assert health["backlog"] == 1


def test_switches(run, conn):
    assert run("disable", "drafting").exit_code == 0
    assert not is_worker_enabled(conn, "drafting")
    assert run("enable", "drafting").exit_code == 0
    assert is_worker_enabled(conn, "drafting")
    assert run("disable", "mystery").exit_code != 0

    assert run("pause").exit_code == 0
    assert not is_system_running(conn)
    assert run("resume").exit_code == 0
    assert is_system_running(conn)


def test_approve_and_reject(run, conn, enqueue):
    first = enqueue("email_queue", status=AWAITING_APPROVAL)
    second = enqueue("email_queue", status=AWAITING_APPROVAL)

    assert run("approve", str(first), "--by", "sam").exit_code == 0
    row = conn.execute("SELECT * FROM email_queue WHERE id = ?", (first,)).fetchone()
    assert row["status"] == PENDING
    assert row["approved_by"] == "sam"
    assert run("approve", str(first)).exit_code == 1

    assert run("reject", str(second)).exit_code == 0
    row = conn.execute("SELECT * FROM email_queue WHERE id = ?", (second,)).fetchone()
    assert row["status"] == "skipped"


def test_retry_failed_item(run, conn, enqueue):
    item_id = enqueue("prospect_queue", max_attempts=1)
    q = LeaseQueue(conn, "prospect_queue")
    q.acquire("w")
    assert q.fail(item_id, "boom") == (FAILED, 1)

    result = run("retry", "prospect", str(item_id))
    assert result.exit_code == 0, result.output
    item = q.get(item_id)
    assert item.status == PENDING
    assert item.attempts == 0
    assert run("retry", "prospect", str(item_id)).exit_code == 1


def test_retry_exhausted_research_resets_deepening(run, conn, enqueue):
    item_id = enqueue("research_queue", status="exhausted",
                      fields={"retry_count": 3, "no_data_rounds": 3, "exhaustion_reason": "dry"})
    assert run("retry", "research", str(item_id)).exit_code == 0
    row = conn.execute("SELECT * FROM research_queue WHERE id = ?", (item_id,)).fetchone()
    assert row["status"] == PENDING
    assert row["retry_count"] == 0
    assert row["no_data_rounds"] == 0
    assert row["exhaustion_reason"] is None


def test_restart_only_applies_to_crashed(run, conn):
    assert run("restart", "research").exit_code == 1
    set_worker_state(conn, "research", CRASHED)
    assert run("restart", "research").exit_code == 0
    assert {r.name: r.status for r in get_worker_records(conn)}["research"] == STOPPED


def test_config_get_and_set(run, conn):
    assert run("config", "get", "research.target_quality").output.strip() == "8"
    assert json.loads(run("config", "get").output)["drafting.min_quality"] == "7"

    assert run("config", "set", "research.target_quality", "9").exit_code == 0
    assert get_config(conn)["research.target_quality"] == "9"

    result = run("config", "set", "made.up", "1")
    assert result.exit_code == 1
    assert "Unknown config key" in result.output
    assert run("config", "set", "research.order_by", "id; DROP TABLE config").exit_code == 1
    assert run("config", "get", "made.up").exit_code == 1


def test_config_set_accepts_durations(run, conn):
    assert run("config", "set", "deepening.retry_delay_seconds", "1h30m").exit_code == 0
    assert get_config(conn)["deepening.retry_delay_seconds"] == "5400"
    assert run("config", "set", "research.poll_seconds", "2.5").exit_code == 0
    assert get_config(conn)["research.poll_seconds"] == "2.5"
    assert run("config", "set", "research.poll_seconds", "soon").exit_code == 1
    assert run("config", "set", "research.poll_seconds", "-1").exit_code == 1
