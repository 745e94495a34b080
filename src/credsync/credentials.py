"""Collaborators of the sync coordinator.

The coordinator never knows how a secret is obtained. It is handed:
- an extractor: zero-argument callable returning the secret (may prompt the
  user, may take seconds)
- optionally a validator: callable secret -> bool

This module provides the fingerprint function recorded in metadata, a
classifier for downstream credential errors, a command-based extractor and a
writer that materializes the secret for container mounts.

Example:
    >>> extractor = CommandExtractor(
    ...     ["security", "find-generic-password", "-s", "ctask-credentials", "-w"]
    ... )
    >>> coordinator = SyncCoordinator(config, extractor)
"""

import hashlib
import logging
import os
import subprocess
from collections.abc import Callable
from pathlib import Path

from credsync.exceptions import ExtractionFailedError
from credsync.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

Extractor = Callable[[], str]
Validator = Callable[[str], bool]

# Lowercased substrings that mark an error as a credential rejection
CREDENTIAL_ERROR_PATTERNS = (
    "unauthorized",
    "401",
    "authentication failed",
    "invalid credentials",
    "token expired",
)


def fingerprint(secret: str) -> str:
    """One-way digest of a secret (SHA-256, lowercase hex).

    Example:
        >>> fingerprint("test-content") == fingerprint("test-content")
        True
    """
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def is_credential_error(error_message: str) -> bool:
    """Check whether an error message reports rejected credentials.

    Example:
        >>> is_credential_error("HTTP 401 Unauthorized")
        True
        >>> is_credential_error("network timeout")
        False
    """
    message = error_message.lower()
    return any(pattern in message for pattern in CREDENTIAL_ERROR_PATTERNS)


class CommandExtractor:
    """Extract the secret by running a command and reading its stdout.

    Typical commands query the OS credential store, e.g. macOS
    ``security find-generic-password -w`` or ``secret-tool lookup``. Any
    interactive prompt (Touch ID, keyring unlock) happens inside the command.
    """

    def __init__(self, command: list[str], timeout: float = 120.0, strip: bool = True):
        """Initialize the extractor.

        Args:
            command: Command and arguments
            timeout: Seconds to wait for the command (covers user prompts)
            strip: Strip surrounding whitespace from stdout
        """
        if not command:
            raise ValueError("CommandExtractor needs a command")
        self.command = list(command)
        self.timeout = timeout
        self.strip = strip

    def __call__(self) -> str:
        """Run the command.

        Raises:
            ExtractionFailedError: Command missing, timed out, failed, or
                printed nothing
        """
        logger.info(f"Extracting credentials with {self.command[0]}")
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise ExtractionFailedError(f"Extractor command not found: {self.command[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ExtractionFailedError(
                f"Extractor command timed out after {self.timeout}s"
            ) from e

        secret = result.stdout.strip() if self.strip else result.stdout

        if result.returncode != 0:
            stderr = LogSanitizer.redact_secret(result.stderr.strip(), secret)
            raise ExtractionFailedError(
                f"Extractor command exited with code {result.returncode}: {stderr}"
            )
        if not secret:
            raise ExtractionFailedError("Extractor command produced no output")

        return secret


def write_credentials_file(path: Path, secret: str) -> Path:
    """Write the secret where a container can mount it.

    The file is created with mode 0600 and replaced atomically, so a container
    starting concurrently sees either the old or the new credentials.

    Returns:
        Path written
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")

    fd = os.open(temp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(secret)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    logger.debug(f"Wrote credentials to {path}")
    return path


__all__ = [
    "CREDENTIAL_ERROR_PATTERNS",
    "CommandExtractor",
    "Extractor",
    "Validator",
    "fingerprint",
    "is_credential_error",
    "write_credentials_file",
]
