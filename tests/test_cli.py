"""Tests for CLI commands: locking and error conversion."""

import os
from unittest.mock import MagicMock

import pytest

from awstools import cli, lock
from awstools.errors import StepFailedError
from awstools.lock import marker_path


@pytest.fixture
def client(monkeypatch, settings):
    c = MagicMock()
    monkeypatch.setattr(cli, "_client", lambda profile, region: (settings, c))
    monkeypatch.setattr(lock, "_install_signal_cleanup", lambda: None)
    return c


def test_backup_runs_under_lock(client, settings, monkeypatch, lock_dir):
    seen = {}

    def backup_volume(c, poller, **kwargs):
        seen.update(kwargs)
        seen["locked"] = marker_path("backup-vol-1", lock_dir).read_text()
        return {"snapshot_id": "snap-1", "pruned": []}

    monkeypatch.setattr(cli.lifecycle, "backup_volume", backup_volume)

    cli.backup_volume("vol-1", keep=3, tag=["Env=prod"])

    assert seen["volume_id"] == "vol-1"
    assert seen["keep"] == 3
    assert seen["tags"] == {"Env": "prod"}
    assert seen["locked"] == str(os.getpid())
    assert not marker_path("backup-vol-1", lock_dir).exists()


def test_already_running_job_is_skipped(client, settings, monkeypatch, lock_dir, caplog):
    marker_path("promote-web", lock_dir).write_text(str(os.getppid()))
    promote = MagicMock()
    monkeypatch.setattr(cli.lifecycle, "promote_image", promote)

    with pytest.raises(SystemExit) as exc_info:
        cli.promote_image("i-1", "web", image_name="web-v2")

    assert exc_info.value.code == cli.ALREADY_RUNNING_EXIT
    assert exc_info.value.code not in (0, 1)
    promote.assert_not_called()
    assert any("already running" in m for m in caplog.messages)
    assert marker_path("promote-web", lock_dir).read_text() == str(os.getppid())


def test_workflow_failure_exits_1(client, monkeypatch, lock_dir):
    def fail(c, poller, **kwargs):
        raise StepFailedError("create-database", "create DB instance", RuntimeError("quota"))

    monkeypatch.setattr(cli.lifecycle, "create_database", fail)

    with pytest.raises(SystemExit) as exc_info:
        cli.create_db("shop", user="admin", password="secret")
    assert exc_info.value.code == 1
    assert not marker_path("db-shop", lock_dir).exists()


def test_corrupt_marker_exits_without_running(client, monkeypatch, lock_dir):
    marker_path("stack-shop", lock_dir).write_text("not a pid")
    create = MagicMock()
    monkeypatch.setattr(cli.lifecycle, "create_web_stack", create)

    with pytest.raises(SystemExit):
        cli.create_stack("shop", "ami-1")
    create.assert_not_called()


def test_invalid_pairs_exit(client):
    with pytest.raises(SystemExit):
        cli.backup_volume("vol-1", tag=["no-equals-sign"])


def test_scaling_policies():
    policies = cli.scaling_policies("shop", 75, 15)
    assert list(policies) == ["shop-scale-up", "shop-scale-down"]
    assert policies["shop-scale-up"]["Adjustment"] == 1
    assert policies["shop-scale-down"]["Threshold"] == 15


def test_wait_instance(client, monkeypatch):
    client.fetcher.return_value = lambda h: {"state": "running", "status": "ok"}
    cli.wait_instance("i-1", state="running", status="ok")
    client.fetcher.assert_called_once_with("instance", ["state", "status"])
