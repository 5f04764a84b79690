"""Exclusive locks for a checkout and a provisioned environment.

Two things are shared between invocations: the checkout (build outputs, the
cargo override, the disk image) and the environment root (emulator,
toolchain, vendored crates). Each has one lock file; the holder writes its
pid there so a waiter can say who it is waiting for.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from rvos_forge.layout import ProjectLayout

logger = logging.getLogger(__name__)

# Poll interval while waiting with a timeout (seconds)
POLL_INTERVAL = 0.1


def _holder(handle: IO[str]) -> str:
    handle.seek(0)
    return handle.read().strip() or "unknown"


def _acquire(handle: IO[str], timeout: float | None) -> bool:
    if timeout is None:
        fcntl.flock(handle, fcntl.LOCK_EX)
        return True
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)


@contextmanager
def file_lock(
    lock_file: Path,
    timeout: float | None = None,
    what: str = "lock",
) -> Iterator[None]:
    """Hold an exclusive flock on ``lock_file`` for the duration of the block.

    Args:
        lock_file: Lock file path (created if missing).
        timeout: Seconds to wait (None = wait indefinitely).
        what: What the lock guards, for messages.

    Raises:
        TimeoutError: If the lock is still held by another process when
            the timeout expires.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with lock_file.open("a+", encoding="utf-8") as handle:
        if not _acquire(handle, timeout):
            raise TimeoutError(
                f"Timed out after {timeout}s waiting for the {what} "
                f"(held by pid {_holder(handle)}, lock file {lock_file})"
            )
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        logger.debug("Holding %s (%s)", what, lock_file)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
            logger.debug("Released %s", what)


def checkout_lock(
    layout: ProjectLayout, timeout: float | None = None
) -> AbstractContextManager[None]:
    """Serialize pipeline commands against one checkout."""
    return file_lock(layout.checkout_lock, timeout, what="checkout lock")


def environment_lock(
    layout: ProjectLayout, timeout: float | None = None
) -> AbstractContextManager[None]:
    """Serialize provisioning of one environment root."""
    return file_lock(layout.environment_lock, timeout, what="environment lock")


__all__ = ["checkout_lock", "environment_lock", "file_lock"]
