"""Hand-off of blocked skylinks to the nginx cache purger.

A separate process periodically moves the list file away and purges every
skylink in it from nginx's cache. Both sides serialize access to the list
with a lock *directory*: mkdir either creates it or fails, atomically.

Lock protocol:
  1. mkdir(lock_path); on failure retry (3 attempts, 1s apart by default).
  2. append one skylink per line to list_path, flush and fsync.
  3. rmdir(lock_path), always, even when writing failed.
"""
from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

from blocker.config import CACHE_PURGE_SETTINGS
from blocker.utils import get_logger

logger = get_logger(__name__)


class LockAcquisitionError(Exception):
    """The nginx cache purge lock could not be acquired."""


class NginxCachePurger:
    def __init__(
        self,
        list_path: Optional[str] = None,
        lock_path: Optional[str] = None,
        *,
        lock_attempts: Optional[int] = None,
        retry_interval: Optional[float] = None,
    ):
        self.list_path = str(list_path if list_path is not None else CACHE_PURGE_SETTINGS["list_path"])
        self.lock_path = str(lock_path if lock_path is not None else CACHE_PURGE_SETTINGS["lock_path"])
        self.lock_attempts = int(lock_attempts if lock_attempts is not None else CACHE_PURGE_SETTINGS["lock_attempts"])  # type: ignore[arg-type]
        self.retry_interval = float(
            retry_interval if retry_interval is not None else CACHE_PURGE_SETTINGS["lock_retry_interval_seconds"]  # type: ignore[arg-type]
        )
        if self.lock_attempts < 1:
            raise ValueError("lock_attempts must be >= 1")

    async def _acquire(self, stop_event: Optional[asyncio.Event] = None) -> None:
        last_error: OSError | None = None
        for attempt in range(1, self.lock_attempts + 1):
            try:
                await asyncio.to_thread(os.mkdir, self.lock_path, 0o700)
                return
            except OSError as e:
                last_error = e
                logger.warning(
                    "Failed to acquire nginx cache purge lock",
                    lock_path=self.lock_path,
                    attempt=attempt,
                    error=str(e),
                )
            if attempt < self.lock_attempts and await _interrupted(stop_event, self.retry_interval):
                raise LockAcquisitionError(
                    f"gave up on nginx lock {self.lock_path}, shutdown requested"
                ) from last_error
        raise LockAcquisitionError(
            f"failed to acquire nginx lock {self.lock_path} after {self.lock_attempts} attempts"
        ) from last_error

    def _release(self) -> None:
        try:
            os.rmdir(self.lock_path)
        except OSError as e:
            logger.error("Failed to release nginx cache purge lock", lock_path=self.lock_path, error=str(e))

    @asynccontextmanager
    async def locked(self, stop_event: Optional[asyncio.Event] = None) -> AsyncIterator[None]:
        await self._acquire(stop_event)
        try:
            yield
        finally:
            await asyncio.to_thread(self._release)

    async def append(self, skylinks: Iterable[str], stop_event: Optional[asyncio.Event] = None) -> int:
        """Append skylinks to the purge list under the lock. Returns lines written.

        File work runs in a worker thread. A set `stop_event` ends the lock
        retries early.

        Raises:
            LockAcquisitionError: the lock stayed taken for every attempt, or
                a stop was requested while waiting for it
            OSError: the list file could not be written
        """
        lines = [s for s in skylinks if s]
        if not lines:
            return 0
        async with self.locked(stop_event):
            await asyncio.to_thread(self._write_lines, lines)
        logger.debug("Skylinks added to nginx cache purge list", count=len(lines), list_path=self.list_path)
        return len(lines)

    def _write_lines(self, lines: list[str]) -> None:
        with open(self.list_path, "a", encoding="utf-8") as f:
            for skylink in lines:
                f.write(skylink + "\n")
            f.flush()
            os.fsync(f.fileno())


async def _interrupted(stop_event: Optional[asyncio.Event], seconds: float) -> bool:
    """Sleep `seconds`; True if `stop_event` got set meanwhile."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    if stop_event.is_set():
        return True
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


__all__ = ["NginxCachePurger", "LockAcquisitionError"]
