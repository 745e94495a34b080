"""Filesystem lock for the credential extraction step.

Lock file: {base_dir}/.credential_metadata/lock

    {"owner_pid": 4242, "acquired_at": "2025-01-02T03:04:05Z",
     "hostname": "laptop", "holder_id": "laptop:4242", "token": "3f2a..."}

Protocol:
- Acquire: write the record to a private temp file, then hard-link it to the
  lock path. os.link() fails if the path exists, so creation is an atomic
  create-if-absent that never exposes an empty or half-written lock.
- Stale: the recorded pid is dead (same host only), the lock is older than
  max_age, or its content is unreadable.
- Reclaim: compare the on-disk bytes with what the caller judged stale and
  replace them only if they still match (compare-and-swap). The compare and
  the replace run under the reclaim guard.
- Release: remove the lock only if it is still ours, also under the guard. A
  lock that is already gone or was reclaimed counts as released.
- Ownership: a holder confirms the lock is still its own under the guard
  before recording anything, and keeps the guard until the write is done.

Correctness never depends on release running: a holder that dies is detected
by the next contender through the staleness rules.
"""

import json
import logging
import os
import platform
import secrets
import socket
from collections.abc import Generator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from credsync.config import DEFAULT_STALE_LOCK_MAX_AGE, default_holder_id
from credsync.exceptions import LockBusyError
from credsync.reclaim_guard import GuardTimeoutError, acquire_guard
from credsync.timestamps import from_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

LOCK_FILENAME = "lock"
GUARD_FILENAME = "lock.guard"

_system = platform.system()


def is_process_alive(pid: int) -> bool:
    """Check whether a local process exists.

    Windows has no side-effect-free liveness check (os.kill terminates
    there), so the answer is always True and callers fall back to the age rule.
    """
    if pid <= 0:
        return False
    if _system == "Windows":
        return True
    try:
        os.kill(pid, 0)  # Signal 0 just checks if process exists
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


@dataclass(frozen=True)
class LockInfo:
    """Parsed view of a lock file.

    owner_pid is None when the file content could not be parsed; acquired_at
    then comes from the file modification time.
    """

    owner_pid: int | None
    acquired_at: datetime
    hostname: str | None = None
    holder_id: str | None = None
    token: str | None = None
    raw: bytes = field(default=b"", repr=False)

    @property
    def is_corrupt(self) -> bool:
        return self.owner_pid is None

    def age(self, now: datetime | None = None) -> float:
        """Seconds since the lock was acquired."""
        return ((now or utc_now()) - self.acquired_at).total_seconds()

    @classmethod
    def parse(cls, raw: bytes, mtime: float) -> "LockInfo":
        """Parse lock file bytes; never raises."""
        try:
            data = json.loads(raw.decode("utf-8"))
            owner_pid = data["owner_pid"]
            if isinstance(owner_pid, bool) or not isinstance(owner_pid, int):
                raise ValueError("owner_pid must be an integer")
            return cls(
                owner_pid=owner_pid,
                acquired_at=from_rfc3339(data["acquired_at"]),
                hostname=data.get("hostname"),
                holder_id=data.get("holder_id"),
                token=data.get("token"),
                raw=raw,
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Unparseable lock content: {e}")
            return cls(
                owner_pid=None,
                acquired_at=datetime.fromtimestamp(mtime, tz=UTC),
                raw=raw,
            )


@dataclass(frozen=True)
class LockHandle:
    """Proof of ownership returned by try_acquire/force_reclaim."""

    path: Path
    info: LockInfo


class LockManager:
    """Acquire, inspect, reclaim and release the credential lock.

    Example:
        >>> locks = LockManager(config.metadata_dir)
        >>> try:
        ...     handle = locks.try_acquire()
        ... except LockBusyError as busy:
        ...     if locks.is_stale(busy.holder):
        ...         handle = locks.force_reclaim(busy.holder)
        >>> with locks.hold(handle):
        ...     extract()
    """

    def __init__(
        self,
        metadata_dir: Path,
        holder_id: str | None = None,
        stale_max_age: float = DEFAULT_STALE_LOCK_MAX_AGE,
        guard_timeout: float = 5.0,
    ):
        """Initialize the lock manager.

        Args:
            metadata_dir: Directory holding the lock and guard files
            holder_id: Identity written into the lock (default: hostname:pid)
            stale_max_age: Default age in seconds after which any lock is stale
            guard_timeout: Seconds to wait for the reclaim guard
        """
        self.metadata_dir = Path(metadata_dir)
        self.path = self.metadata_dir / LOCK_FILENAME
        self.guard_path = self.metadata_dir / GUARD_FILENAME
        self.holder_id = holder_id or default_holder_id()
        self.stale_max_age = stale_max_age
        self.guard_timeout = guard_timeout
        self.hostname = socket.gethostname()

    def _new_record(self) -> LockInfo:
        acquired_at = utc_now()
        token = secrets.token_hex(16)
        payload = {
            "owner_pid": os.getpid(),
            "acquired_at": to_rfc3339(acquired_at),
            "hostname": self.hostname,
            "holder_id": self.holder_id,
            "token": token,
        }
        raw = json.dumps(payload, indent=2).encode("utf-8")
        return LockInfo.parse(raw, mtime=acquired_at.timestamp())

    def _write_temp(self, info: LockInfo) -> Path:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.metadata_dir / f".{LOCK_FILENAME}.{os.getpid()}.{info.token}.tmp"
        fd = os.open(temp_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        try:
            os.write(fd, info.raw)
            os.fsync(fd)
        finally:
            os.close(fd)
        return temp_path

    def read(self) -> LockInfo | None:
        """Return the current lock, or None if there is none."""
        try:
            raw = self.path.read_bytes()
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return LockInfo.parse(raw, mtime)

    def try_acquire(self) -> LockHandle:
        """Create the lock if absent, in a single atomic step.

        Raises:
            LockBusyError: If the lock exists; carries the holder (or None if
                it vanished between the attempt and the read)
        """
        info = self._new_record()
        temp_path = self._write_temp(info)
        try:
            os.link(temp_path, self.path)
        except FileExistsError:
            raise LockBusyError(self.read()) from None
        finally:
            temp_path.unlink(missing_ok=True)

        logger.debug(f"Acquired credential lock {self.path} (PID={os.getpid()})")
        return LockHandle(path=self.path, info=info)

    def is_stale(
        self,
        existing: LockInfo,
        now: datetime | None = None,
        max_age: float | None = None,
    ) -> bool:
        """Decide whether a lock is abandoned rather than merely slow.

        Args:
            existing: Lock as read by the caller
            now: Reference time (default: now)
            max_age: Age ceiling in seconds (default: stale_max_age)
        """
        if existing.is_corrupt:
            return True

        max_age = self.stale_max_age if max_age is None else max_age
        if existing.age(now) > max_age:
            return True

        # A pid from another host says nothing about this one
        if existing.hostname not in (None, self.hostname):
            return False
        return not is_process_alive(existing.owner_pid)  # type: ignore[arg-type]

    def force_reclaim(self, existing: LockInfo) -> LockHandle:
        """Replace a stale lock, only if it is still exactly `existing`.

        Raises:
            LockBusyError: If the lock changed or vanished since it was read,
                or the guard could not be acquired
        """
        info = self._new_record()
        temp_path = self._write_temp(info)
        try:
            with acquire_guard(self.guard_path, timeout=self.guard_timeout):
                current = self.read()
                if current is None or current.raw != existing.raw:
                    raise LockBusyError(current)
                os.replace(temp_path, self.path)
        except GuardTimeoutError as e:
            logger.debug(f"Reclaim guard busy: {e}")
            raise LockBusyError(existing) from e
        finally:
            temp_path.unlink(missing_ok=True)

        if existing.is_corrupt:
            logger.warning(f"Reclaimed corrupt credential lock {self.path}")
        else:
            logger.warning(
                f"Reclaimed stale credential lock from PID {existing.owner_pid} "
                f"on {existing.hostname} (held {existing.age():.0f}s)"
            )
        return LockHandle(path=self.path, info=info)

    def release(self, handle: LockHandle) -> None:
        """Remove the lock if it is still ours. Never raises."""
        try:
            with acquire_guard(self.guard_path, timeout=self.guard_timeout):
                current = self.read()
                if current is None:
                    logger.debug("Credential lock already gone at release")
                    return
                if current.raw != handle.info.raw:
                    logger.warning(
                        "Credential lock was reclaimed by another process "
                        f"(now PID {current.owner_pid}); leaving it in place"
                    )
                    return
                self.path.unlink(missing_ok=True)
        except (GuardTimeoutError, OSError) as e:
            # The lock goes stale and the next contender reclaims it
            logger.warning(f"Could not release credential lock {self.path}: {e}")
            return

        logger.debug(f"Released credential lock {self.path} (PID={os.getpid()})")

    @contextmanager
    def ownership(self, handle: LockHandle) -> Generator[bool, None, None]:
        """Hold the reclaim guard and report whether the lock is still ours.

        Nobody can reclaim the lock while the block runs, so work done under
        a True answer is done by the only holder. Yields False if the guard
        cannot be acquired.
        """
        with ExitStack() as stack:
            try:
                stack.enter_context(acquire_guard(self.guard_path, timeout=self.guard_timeout))
                current = self.read()
            except (GuardTimeoutError, OSError) as e:
                logger.warning(f"Could not confirm credential lock ownership: {e}")
                current = None
            yield current is not None and current.raw == handle.info.raw

    def still_held(self, handle: LockHandle) -> bool:
        """True if the lock on disk is still the one in `handle`."""
        with self.ownership(handle) as owned:
            return owned

    @contextmanager
    def hold(self, handle: LockHandle) -> Generator[LockHandle, None, None]:
        """Release the lock on every exit path, including SystemExit."""
        try:
            yield handle
        finally:
            self.release(handle)

    def remove_if_stale(self, now: datetime | None = None) -> bool:
        """Delete the lock if it is stale (explicit user cleanup).

        Returns:
            True if a stale lock was removed
        """
        existing = self.read()
        if existing is None or not self.is_stale(existing, now):
            return False
        try:
            with acquire_guard(self.guard_path, timeout=self.guard_timeout):
                current = self.read()
                if current is None or current.raw != existing.raw:
                    return False
                self.path.unlink(missing_ok=True)
        except GuardTimeoutError as e:
            logger.warning(f"Could not remove stale credential lock: {e}")
            return False
        logger.info(f"Removed stale credential lock (PID {existing.owner_pid})")
        return True


__all__ = [
    "GUARD_FILENAME",
    "LOCK_FILENAME",
    "LockHandle",
    "LockInfo",
    "LockManager",
    "is_process_alive",
]
