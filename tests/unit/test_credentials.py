"""Tests for extractor collaborators: fingerprint, error classifier, command extractor."""

import stat
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from credsync.credentials import (
    CommandExtractor,
    fingerprint,
    is_credential_error,
    write_credentials_file,
)
from credsync.exceptions import ExtractionFailedError


class TestFingerprint:
    def test_known_digest(self):
        # sha256("test")
        assert fingerprint("test") == (
            "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"
        )

    def test_deterministic_and_distinct(self):
        assert fingerprint("a") == fingerprint("a")
        assert fingerprint("a") != fingerprint("b")

    def test_does_not_contain_secret(self):
        assert "hunter2" not in fingerprint("hunter2")


class TestIsCredentialError:
    @pytest.mark.parametrize(
        "message",
        [
            "HTTP 401 Unauthorized",
            "Authentication failed for user",
            "error: Invalid credentials supplied",
            "OAuth token expired",
            "UNAUTHORIZED",
        ],
    )
    def test_detects_credential_errors(self, message):
        assert is_credential_error(message) is True

    @pytest.mark.parametrize("message", ["network timeout", "500 Internal Server Error", ""])
    def test_ignores_other_errors(self, message):
        assert is_credential_error(message) is False


class TestCommandExtractor:
    """Tests for the command-based extractor."""

    def test_returns_stripped_stdout(self):
        extractor = CommandExtractor([sys.executable, "-c", "print('  s3cret  ')"])
        assert extractor() == "s3cret"

    def test_strip_disabled(self):
        extractor = CommandExtractor(
            [sys.executable, "-c", "import sys; sys.stdout.write('s3cret\\n')"], strip=False
        )
        assert extractor() == "s3cret\n"

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            CommandExtractor([])

    def test_missing_command(self):
        extractor = CommandExtractor(["definitely-not-a-real-command-credsync"])

        with pytest.raises(ExtractionFailedError, match="not found"):
            extractor()

    def test_non_zero_exit(self):
        extractor = CommandExtractor(
            [sys.executable, "-c", "import sys; sys.stderr.write('keychain locked'); sys.exit(3)"]
        )

        with pytest.raises(ExtractionFailedError, match="code 3: keychain locked"):
            extractor()

    def test_non_zero_exit_redacts_secrets_in_stderr(self):
        result = MagicMock(returncode=1, stdout="", stderr="bad password=hunter2")

        with patch("subprocess.run", return_value=result):
            with pytest.raises(ExtractionFailedError) as exc_info:
                CommandExtractor(["lookup"])()

        assert "hunter2" not in str(exc_info.value)
        assert "[REDACTED]" in str(exc_info.value)

    def test_empty_output(self):
        extractor = CommandExtractor([sys.executable, "-c", "print('   ')"])

        with pytest.raises(ExtractionFailedError, match="no output"):
            extractor()

    def test_timeout(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["lookup"], 2.0)):
            with pytest.raises(ExtractionFailedError, match="timed out"):
                CommandExtractor(["lookup"], timeout=2.0)()

    def test_passes_timeout_to_subprocess(self):
        result = MagicMock(returncode=0, stdout="tok\n", stderr="")

        with patch("subprocess.run", return_value=result) as mock_run:
            CommandExtractor(["lookup", "-w"], timeout=7.5)()

        args, kwargs = mock_run.call_args
        assert args[0] == ["lookup", "-w"]
        assert kwargs["timeout"] == 7.5
        assert kwargs["capture_output"] is True


class TestWriteCredentialsFile:
    def test_writes_secret_owner_only(self, tmp_path):
        target = tmp_path / "mount" / ".credentials.json"

        path = write_credentials_file(target, '{"token": "abc"}')

        assert path == target
        assert target.read_text() == '{"token": "abc"}'
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_replaces_existing_file(self, tmp_path):
        target = tmp_path / "creds"
        target.write_text("old")

        write_credentials_file(target, "new")

        assert target.read_text() == "new"
        assert [p.name for p in tmp_path.iterdir()] == ["creds"]
