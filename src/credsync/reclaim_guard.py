"""Short-lived OS advisory lock serializing lock reclaim and release.

The credential lock itself is a plain file created with an atomic
create-if-absent. Replacing a stale lock, or removing our own, is a
read-compare-write sequence; this guard makes that sequence atomic with
respect to every other process doing the same.

The guard is held for microseconds and the kernel drops it when its holder
dies, so it never needs staleness detection of its own.

Platform:
- Unix/macOS/Linux: fcntl.flock() (advisory whole-file lock)
- Windows: msvcrt.locking() (byte-range lock on the first byte)

Example:
    >>> with acquire_guard(metadata_dir / "lock.guard", timeout=5.0):
    ...     current = lock_manager.read()
    ...     # compare and replace
"""

import logging
import platform
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

_system = platform.system()
if TYPE_CHECKING or _system == "Windows":
    import msvcrt  # type: ignore[import-not-found]
if TYPE_CHECKING or _system != "Windows":
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

INITIAL_DELAY = 0.01
MAX_DELAY = 0.5

__all__ = ["GuardTimeoutError", "acquire_guard"]


class GuardTimeoutError(Exception):
    """Raised when the guard cannot be acquired within the timeout."""


@contextmanager
def acquire_guard(guard_path: Path, timeout: float = 5.0) -> Generator[None, None, None]:
    """Hold the exclusive guard for the duration of the block.

    The guard file is created if missing and never deleted: deleting it would
    let two processes lock two different inodes.

    Args:
        guard_path: Path of the guard file
        timeout: Maximum seconds to wait for the guard

    Raises:
        GuardTimeoutError: If the guard cannot be acquired within timeout
    """
    guard_path.parent.mkdir(parents=True, exist_ok=True)

    with open(guard_path, "ab") as handle:
        _acquire_with_backoff(handle, guard_path, timeout)
        try:
            yield
        finally:
            _release(handle)


def _acquire_with_backoff(handle: BinaryIO, guard_path: Path, timeout: float) -> None:
    """Retry a non-blocking lock with exponential backoff: 10ms, 20ms, 40ms ... 500ms."""
    deadline = time.monotonic() + timeout
    delay = INITIAL_DELAY

    while True:
        try:
            _try_lock(handle)
            return
        except (BlockingIOError, PermissionError):
            # msvcrt reports contention as PermissionError
            pass

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise GuardTimeoutError(
                f"Failed to acquire reclaim guard {guard_path} after {timeout} seconds"
            )
        time.sleep(min(delay, remaining))
        delay = min(delay * 2, MAX_DELAY)


def _try_lock(handle: BinaryIO) -> None:
    if _system == "Windows":
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _release(handle: BinaryIO) -> None:
    try:
        if _system == "Windows":
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        # Closing the handle drops the lock anyway
        logger.debug(f"Error during guard release: {e}")
