"""Sync coordinator: one interactive credential extraction shared by many processes.

Every process that needs the secret calls SyncCoordinator.sync() once:

    CheckFresh --fresh--> Done (no lock, no extraction)
        |
      stale
        v
    Acquiring --busy, stale holder--> reclaim (CAS) --lost--> wait
        |       --busy, live holder--> wait, re-check freshness --fresh--> Done
        |       --budget exhausted--> SyncTimeoutError
     acquired
        v
    Extracting --ok--> write metadata, release --> Done
               --fail--> release --> ExtractionFailedError

Processes that lose the lock race poll the metadata record rather than the
lock, so N processes starting together produce exactly one prompt.

Downstream rejection policy: CredentialOperation allows one forced refresh per
logical operation. A second rejection raises ForcedRefreshExhaustedError
instead of prompting again.

Example:
    >>> coordinator = SyncCoordinator(get_sync_config(), CommandExtractor(cmd))
    >>> result = coordinator.sync()
    >>> result.fingerprint
    '9f86d081884c7d65...'
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from credsync.config import SyncConfig, get_sync_config
from credsync.credentials import Extractor, Validator, fingerprint, is_credential_error
from credsync.exceptions import (
    CredentialRejectedError,
    CredentialSyncError,
    ExtractionFailedError,
    ForcedRefreshExhaustedError,
    LockBusyError,
    SyncTimeoutError,
)
from credsync.lock_manager import LockHandle, LockInfo, LockManager
from credsync.log_sanitizer import LogSanitizer
from credsync.metadata_store import CredentialMetadata, MetadataStore
from credsync.timestamps import to_rfc3339, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# +/- fraction applied to the retry interval
JITTER_FRACTION = 0.25


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a successful sync.

    Attributes:
        fingerprint: Fingerprint of the current secret
        extracted: True if this call ran the extractor
        metadata: Record describing the current secret
        secret: The secret, only when this call extracted it
    """

    fingerprint: str
    extracted: bool
    metadata: CredentialMetadata
    secret: str | None = field(default=None, repr=False)

    @classmethod
    def from_record(cls, record: CredentialMetadata) -> "SyncResult":
        return cls(fingerprint=record.secret_fingerprint, extracted=False, metadata=record)


class SyncCoordinator:
    """Coordinate credential extraction across processes.

    Thread-safety: one coordinator per thread; coordination between processes
    is entirely through the metadata directory.
    """

    def __init__(
        self,
        config: SyncConfig | None,
        extractor: Extractor,
        validator: Validator | None = None,
        store: MetadataStore | None = None,
        locks: LockManager | None = None,
    ):
        """Initialize the coordinator.

        Args:
            config: Sync settings (default: get_sync_config())
            extractor: Produces the secret; may prompt the user
            validator: Optional check run on a freshly extracted secret
            store: Metadata store override (default: from config)
            locks: Lock manager override (default: from config)
        """
        self.config = config or get_sync_config()
        self.extractor = extractor
        self.validator = validator
        self.store = store or MetadataStore(self.config.metadata_dir)
        self.locks = locks or LockManager(
            self.config.metadata_dir,
            holder_id=self.config.holder_id,
            stale_max_age=self.config.stale_lock_max_age,
        )

    def sync(self, force_refresh: bool = False) -> SyncResult:
        """Make sure a fresh secret has been extracted by some process.

        Args:
            force_refresh: Skip the freshness fast path (the cached secret was
                rejected downstream). While waiting, only a record extracted
                after this call started is accepted.

        Returns:
            SyncResult for the current secret

        Raises:
            ExtractionFailedError: This process held the lock and extraction failed
            SyncTimeoutError: The wait budget ran out
        """
        not_before: datetime | None = None
        if force_refresh:
            previous = self.store.read()
            not_before = previous.extracted_at if previous else None
            logger.info("Forced credential refresh: bypassing freshness check")
        else:
            record = self._usable_record(not_before=None)
            if record is not None:
                logger.debug(
                    f"Credentials fresh until {to_rfc3339(record.valid_until)}, skipping sync"
                )
                return SyncResult.from_record(record)

        budget = self.config.acquire_wait_budget
        deadline = time.monotonic() + budget
        last_holder_pid: int | None = None
        attempt = 0

        while True:
            attempt += 1
            handle, holder = self._attempt_acquire()
            if handle is not None:
                return self._extract_holding(handle, not_before)

            if holder is not None:
                last_holder_pid = holder.owner_pid

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(
                    f"Gave up waiting for credential lock after {budget:.0f}s "
                    f"({attempt} attempts, last holder PID {last_holder_pid})"
                )
                raise SyncTimeoutError(last_holder_pid, budget)

            if attempt == 1:
                logger.info(
                    f"Credential sync in progress in PID {last_holder_pid}, waiting..."
                )
            time.sleep(min(self._retry_delay(), remaining))

            record = self._usable_record(not_before)
            if record is not None:
                logger.info("Another process synced credentials, skipping")
                return SyncResult.from_record(record)

    def _usable_record(self, not_before: datetime | None) -> CredentialMetadata | None:
        """Fresh record, extracted strictly after not_before when given."""
        record = self.store.read()
        if record is None or not record.is_fresh(utc_now()):
            return None
        if not_before is not None and record.extracted_at <= not_before:
            return None
        return record

    def _attempt_acquire(self) -> tuple[LockHandle | None, LockInfo | None]:
        """One acquisition attempt, reclaiming the lock if its holder is gone."""
        try:
            return self.locks.try_acquire(), None
        except LockBusyError as busy:
            holder = busy.holder

        if holder is None:
            # Released between our attempt and our read
            return None, None

        if not self.locks.is_stale(holder):
            return None, holder

        try:
            return self.locks.force_reclaim(holder), holder
        except LockBusyError as lost:
            logger.debug("Lost the race to reclaim a stale credential lock")
            return None, lost.holder or holder

    def _retry_delay(self) -> float:
        interval = self.config.retry_interval
        return interval + random.uniform(-interval * JITTER_FRACTION, interval * JITTER_FRACTION)

    def _extract_holding(self, handle: LockHandle, not_before: datetime | None) -> SyncResult:
        with self.locks.hold(handle):
            # The previous holder may have finished between our last check and our acquire
            record = self._usable_record(not_before)
            if record is not None:
                logger.info("Credentials were synced while acquiring the lock, skipping")
                return SyncResult.from_record(record)

            logger.info("Performing credential sync...")
            secret = self._extract()
            digest = fingerprint(secret)
            record = CredentialMetadata.create(
                digest, self.config.validity_window, holder_id=self.config.holder_id
            )
            with self.locks.ownership(handle) as owned:
                if not owned:
                    # A newer holder owns the record now; the secret is still good
                    logger.warning(
                        "Credential lock was reclaimed during extraction; "
                        "not recording credential metadata"
                    )
                else:
                    try:
                        self.store.write(record)
                    except OSError as e:
                        # The secret is good; other processes will simply extract again
                        logger.warning(f"Failed to record credential metadata: {e}")

        logger.info(f"Credentials synced (fingerprint {digest[:12]})")
        return SyncResult(fingerprint=digest, extracted=True, metadata=record, secret=secret)

    def _extract(self) -> str:
        try:
            secret = self.extractor()
        except ExtractionFailedError:
            raise
        except Exception as e:
            raise ExtractionFailedError(
                LogSanitizer.create_safe_error_message(e, "Credential extraction failed")
            ) from e

        if not isinstance(secret, str) or not secret:
            raise ExtractionFailedError("Credential extraction returned no credentials")

        if self.validator is not None:
            try:
                valid = self.validator(secret)
            except Exception as e:
                raise ExtractionFailedError(
                    LogSanitizer.redact_secret(f"Credential validation failed: {e}", secret)
                ) from e
            if not valid:
                raise ExtractionFailedError("Extracted credentials failed validation")

        return secret

    def operation(self) -> "CredentialOperation":
        """Start a logical operation with its own forced-refresh allowance."""
        return CredentialOperation(self)

    def run(
        self,
        action: Callable[[SyncResult], T],
        is_rejection: Callable[[Exception], bool] | None = None,
    ) -> T:
        """Sync, then run action; on a credential rejection refresh once and retry.

        Args:
            action: Consumer of the credentials
            is_rejection: Classifies an exception from action as a credential
                rejection (default: CredentialRejectedError or a message that
                looks like an authentication failure)

        Raises:
            ForcedRefreshExhaustedError: action rejected the credentials again
                after the forced refresh
        """
        classify = is_rejection or is_rejection_error
        operation = self.operation()
        result = operation.credentials()

        while True:
            try:
                return action(result)
            except Exception as e:
                if not classify(e):
                    raise
                try:
                    result = operation.reject(LogSanitizer.sanitize(str(e)))
                except ForcedRefreshExhaustedError as exhausted:
                    raise exhausted from e


class CredentialOperation:
    """Credentials for one logical operation, with at most one forced refresh.

    Example:
        >>> operation = coordinator.operation()
        >>> result = operation.credentials()
        >>> # ... authentication fails downstream ...
        >>> result = operation.reject("401 from API")   # one forced refresh
        >>> operation.reject("401 again")               # ForcedRefreshExhaustedError
    """

    def __init__(self, coordinator: SyncCoordinator):
        self.coordinator = coordinator
        self.forced_refresh_used = False
        self.result: SyncResult | None = None

    def credentials(self) -> SyncResult:
        """Sync once for this operation and return the result."""
        if self.result is None:
            self.result = self.coordinator.sync()
        return self.result

    def reject(self, reason: str = "") -> SyncResult:
        """Report a downstream rejection of the current credentials.

        Raises:
            ForcedRefreshExhaustedError: The forced refresh was already used
        """
        if self.forced_refresh_used:
            logger.error(f"Credentials rejected again after a forced refresh: {reason}")
            raise ForcedRefreshExhaustedError(
                "Credentials were rejected after a forced refresh; "
                "authentication failed"
                + (f": {reason}" if reason else "")
            )

        self.forced_refresh_used = True
        logger.warning(f"Credentials rejected downstream, forcing a refresh: {reason}")
        self.result = self.coordinator.sync(force_refresh=True)
        return self.result


def is_rejection_error(error: Exception) -> bool:
    """Default classifier for SyncCoordinator.run()."""
    if isinstance(error, CredentialRejectedError):
        return True
    if isinstance(error, CredentialSyncError):
        return False
    return is_credential_error(str(error))


__all__ = [
    "CredentialOperation",
    "SyncCoordinator",
    "SyncResult",
    "is_rejection_error",
]
