"""credsync - coordinate credential extraction across concurrent sessions

Philosophy:
- One prompt per validity window, no matter how many sessions start
- Coordination through the filesystem only (no daemon)
- A crashed holder never blocks anyone for long
- Secrets never touch metadata or logs

Many launcher processes can start at once; SyncCoordinator makes exactly one
of them extract the secret from the OS credential store while the others wait
for its metadata record.
"""

from credsync.config import SyncConfig, get_sync_config
from credsync.coordinator import CredentialOperation, SyncCoordinator, SyncResult
from credsync.credentials import CommandExtractor, fingerprint, is_credential_error
from credsync.exceptions import (
    CredentialRejectedError,
    CredentialSyncError,
    ExtractionFailedError,
    ForcedRefreshExhaustedError,
    SyncTimeoutError,
)

__version__ = "0.1.0"
__all__ = [
    "CommandExtractor",
    "CredentialOperation",
    "CredentialRejectedError",
    "CredentialSyncError",
    "ExtractionFailedError",
    "ForcedRefreshExhaustedError",
    "SyncConfig",
    "SyncCoordinator",
    "SyncResult",
    "SyncTimeoutError",
    "__version__",
    "fingerprint",
    "get_sync_config",
    "is_credential_error",
]
