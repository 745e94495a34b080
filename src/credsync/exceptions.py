"""Custom exceptions for credential synchronization."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from credsync.lock_manager import LockInfo


class CredentialSyncError(Exception):
    """Base exception for credential sync errors."""

    pass


class ConfigError(CredentialSyncError):
    """Configuration could not be loaded, validated or saved."""

    pass


class ExtractionFailedError(CredentialSyncError):
    """The extractor could not produce a usable secret."""

    pass


class SyncTimeoutError(CredentialSyncError):
    """Lock was never acquired and no fresh record appeared within the wait budget."""

    def __init__(self, holder_pid: int | None, waited: float):
        self.holder_pid = holder_pid
        self.waited = waited
        holder = f"PID {holder_pid}" if holder_pid is not None else "an unknown process"
        super().__init__(
            f"Another process ({holder}) appears to be extracting credentials "
            f"and has not finished after {waited:.1f}s"
        )


class CorruptMetadataError(CredentialSyncError):
    """Metadata record exists but cannot be parsed.

    Never propagated out of the metadata store: a damaged record reads as absent.
    """

    pass


class CredentialRejectedError(CredentialSyncError):
    """Raised by a consumer when the synced credentials are rejected downstream."""

    pass


class ForcedRefreshExhaustedError(CredentialSyncError):
    """Credentials were still rejected after the one forced refresh."""

    pass


class LockBusyError(CredentialSyncError):
    """Lock is held by another process (or was reclaimed before we could)."""

    def __init__(self, holder: LockInfo | None):
        self.holder = holder
        if holder is None:
            message = "Credential lock changed hands before it could be claimed"
        else:
            message = f"Credential lock held by PID {holder.owner_pid} on {holder.hostname}"
        super().__init__(message)


__all__ = [
    "ConfigError",
    "CorruptMetadataError",
    "CredentialRejectedError",
    "CredentialSyncError",
    "ExtractionFailedError",
    "ForcedRefreshExhaustedError",
    "LockBusyError",
    "SyncTimeoutError",
]
