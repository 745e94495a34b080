"""Tests for the credsync maintenance CLI."""

import json
import os
import socket
import sys
from datetime import timedelta

import pytest
from click.testing import CliRunner

from credsync import __version__
from credsync.cli import main
from credsync.credentials import fingerprint
from credsync.timestamps import to_rfc3339, utc_now

PRINT_TOKEN = [sys.executable, "-c", "print('tok-123')"]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, base_dir):
    path = tmp_path / "config.toml"
    path.write_text(
        "[credential_sync]\n"
        f'base_dir = "{base_dir}"\n'
        "acquire_wait_budget = 0.3\n"
        "retry_interval = 0.05\n"
    )
    return path


def invoke(runner, config_file, *args, **kwargs):
    return runner.invoke(main, ["--config", str(config_file), *args], **kwargs)


def plant_lock(locks, age):
    locks.metadata_dir.mkdir(parents=True, exist_ok=True)
    locks.path.write_text(
        json.dumps(
            {
                "owner_pid": os.getpid(),
                "acquired_at": to_rfc3339(utc_now() - timedelta(seconds=age)),
                "hostname": socket.gethostname(),
            }
        )
    )


class TestMain:
    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("status", "sync", "clear", "config"):
            assert command in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        bad = tmp_path / "bad.toml"
        bad.write_text("[credential_sync\n")

        result = runner.invoke(main, ["--config", str(bad), "status"])

        assert result.exit_code == 1
        assert "Failed to load config" in result.output


class TestSyncCommand:
    def test_sync_extracts(self, runner, config_file, store):
        result = invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        assert result.exit_code == 0, result.output
        assert "Credentials synced" in result.output
        assert store.read().secret_fingerprint == fingerprint("tok-123")

    def test_second_sync_uses_cache(self, runner, config_file):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        result = invoke(
            runner, config_file, "sync", "--", sys.executable, "-c", "raise SystemExit(9)"
        )

        assert result.exit_code == 0
        assert "already fresh" in result.output

    def test_force_extracts_again(self, runner, config_file, store):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        result = invoke(
            runner, config_file, "sync", "--force", "--", sys.executable, "-c", "print('tok-456')"
        )

        assert result.exit_code == 0
        assert store.read().secret_fingerprint == fingerprint("tok-456")

    def test_output_file(self, runner, config_file, tmp_path):
        target = tmp_path / "mount" / "credentials"

        result = invoke(runner, config_file, "sync", "-o", str(target), "--", *PRINT_TOKEN)

        assert result.exit_code == 0
        assert target.read_text() == "tok-123"

    def test_output_file_not_written_when_cache_fresh(self, runner, config_file, tmp_path):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)
        target = tmp_path / "mount" / "credentials"

        result = invoke(runner, config_file, "sync", "-o", str(target), "--", *PRINT_TOKEN)

        assert result.exit_code == 0
        assert not target.exists()
        assert "Not written" in result.output
        assert "--force" in result.output

    def test_extraction_failure(self, runner, config_file, store):
        result = invoke(
            runner, config_file, "sync", "--", sys.executable, "-c", "raise SystemExit(2)"
        )

        assert result.exit_code == 1
        assert "could not get your credentials" in result.output
        assert store.read() is None

    def test_timeout_when_lock_held(self, runner, config_file, locks, store):
        locks.try_acquire()

        result = invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        assert result.exit_code == 1
        assert "stuck holding the lock" in result.output
        assert store.read() is None

    def test_command_required(self, runner, config_file):
        result = invoke(runner, config_file, "sync")
        assert result.exit_code == 2


class TestStatusCommand:
    def test_never_synced(self, runner, config_file):
        result = invoke(runner, config_file, "status")

        assert result.exit_code == 0
        assert "never synced" in result.output
        assert "free" in result.output

    def test_after_sync(self, runner, config_file):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        result = invoke(runner, config_file, "status")

        assert result.exit_code == 0
        assert fingerprint("tok-123")[:12] in result.output
        assert "yes" in result.output

    def test_held_lock(self, runner, config_file, locks):
        locks.try_acquire()

        result = invoke(runner, config_file, "status")

        assert "held by PID" in result.output

    def test_stale_lock(self, runner, config_file, locks):
        plant_lock(locks, age=500)

        result = invoke(runner, config_file, "status")

        assert "stale by PID" in result.output


class TestClearCommand:
    def test_clear_with_yes(self, runner, config_file, store):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        result = invoke(runner, config_file, "clear", "--yes")

        assert result.exit_code == 0
        assert "Removed credential metadata" in result.output
        assert store.read() is None

    def test_clear_confirm_declined(self, runner, config_file, store):
        invoke(runner, config_file, "sync", "--", *PRINT_TOKEN)

        result = invoke(runner, config_file, "clear", input="n\n")

        assert result.exit_code == 1
        assert store.read() is not None

    def test_clear_nothing(self, runner, config_file):
        result = invoke(runner, config_file, "clear", "-y")

        assert result.exit_code == 0
        assert "Nothing to clear" in result.output

    def test_clear_removes_stale_lock_keeps_live(self, runner, config_file, locks):
        plant_lock(locks, age=500)
        result = invoke(runner, config_file, "clear", "-y")
        assert "Removed stale lock" in result.output
        assert locks.read() is None

        locks.try_acquire()
        result = invoke(runner, config_file, "clear", "-y")
        assert "Nothing to clear" in result.output
        assert locks.read() is not None


class TestConfigCommands:
    def test_init_writes_defaults(self, runner, tmp_path):
        path = tmp_path / "new" / "config.toml"

        result = runner.invoke(main, ["--config", str(path), "config", "init"])

        assert result.exit_code == 0
        assert "[credential_sync]" in path.read_text()

    def test_init_refuses_to_overwrite(self, runner, config_file):
        result = invoke(runner, config_file, "config", "init")

        assert result.exit_code == 1
        assert "already exist" in result.output
        assert "acquire_wait_budget = 0.3" in config_file.read_text()

    def test_init_force(self, runner, config_file):
        result = invoke(runner, config_file, "config", "init", "--force")

        assert result.exit_code == 0
        assert "acquire_wait_budget = 60.0" in config_file.read_text()

    def test_show(self, runner, config_file):
        result = invoke(runner, config_file, "config", "show")

        assert result.exit_code == 0
        assert "[credential_sync]" in result.output
        assert "acquire_wait_budget = 0.3" in result.output
        assert "holder_id" in result.output

    def test_show_applies_environment(self, runner, config_file, monkeypatch):
        monkeypatch.setenv("CREDSYNC_VALIDITY_WINDOW", "45")

        result = invoke(runner, config_file, "config", "show")

        assert "validity_window = 45.0" in result.output
