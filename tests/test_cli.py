import json
from types import SimpleNamespace

from fakeredis import FakeServer, aioredis
import pytest
from typer.testing import CliRunner

from launchpad import cli

runner = CliRunner()


@pytest.fixture
def fake_redis(monkeypatch):
    server = FakeServer()
    monkeypatch.setattr(
        cli,
        "Redis",
        SimpleNamespace(from_url=lambda url, **kwargs: aioredis.FakeRedis(server=server, **kwargs)),
    )
    return server


def test_enqueue_build_then_show_job(fake_redis):
    result = runner.invoke(cli.app, ["enqueue", "build", "project-1", "conv-1", "msg-1", "user-1", "--json"])

    assert result.exit_code == 0
    enqueued = json.loads(result.output)
    assert enqueued["project_id"] == "project-1"
    assert enqueued["status"] == "queued"

    result = runner.invoke(cli.app, ["job", enqueued["job_id"], "--queue", "build", "--json"])

    assert result.exit_code == 0
    record = json.loads(result.output)
    assert record["type"] == "build"
    assert record["status"] == "queued"
    assert record["max_attempts"] == 3
    assert record["payload"]["message_id"] == "msg-1"


def test_enqueue_deploy(fake_redis):
    result = runner.invoke(cli.app, ["enqueue", "deploy", "project-1", "user-1", "--json"])

    assert result.exit_code == 0
    job_id = json.loads(result.output)["job_id"]

    result = runner.invoke(cli.app, ["job", job_id, "--queue", "deploy", "--json"])
    assert json.loads(result.output)["timeout"] == 900.0


def test_unknown_job_exits_with_error(fake_redis):
    result = runner.invoke(cli.app, ["job", "missing"])

    assert result.exit_code == 1


def test_unknown_queue_exits_with_error():
    result = runner.invoke(cli.app, ["job", "job-1", "--queue", "marketing"])

    assert result.exit_code == 1


def test_breakers_json_lists_every_platform():
    result = runner.invoke(cli.app, ["breakers", "--json"])

    assert result.exit_code == 0
    status = json.loads(result.output)
    assert set(status) == {"codegen", "railway-api", "cloudflare-api", "github-api"}
    assert all(snapshot["state"] == "closed" for snapshot in status.values())
