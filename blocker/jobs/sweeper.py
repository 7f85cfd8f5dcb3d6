"""Background sweeper: finds skylinks to block and sends them to skyd.

One sweep reads every pending skylink (oldest first), blocks them in chunks
and moves the checkpoint forward. The loop around it decides how long to idle
before the next sweep:

* nothing to do        -> sleep_between_scans, error streak reset
* something blocked    -> sweep again right away, error streak reset
* sweep raised         -> step * min(streak, steps), linear and capped

A stop request interrupts the idle wait immediately and is also checked
between chunks and between skyd requests, so shutdown never waits for a full
sweep.
"""
from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from blocker.config import SWEEP_SETTINGS
from blocker.services.dispatcher import BatchDispatcher, DispatchOutcome
from blocker.services.skylink_store import SkylinkStore
from blocker.utils import get_logger, log_performance
from blocker.utils.backoff import clamp_error_streak, compute_sleep_on_error
from blocker.utils.time import utc_now

logger = get_logger(__name__)


class SweepOutcome(str, enum.Enum):
    NO_WORK = "NO_WORK"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


@dataclass
class SweepState:
    """Loop state, owned by the sweeper task alone."""
    sleep_length: float = 0.0
    consecutive_errors: int = 0
    last_outcome: SweepOutcome | None = None
    last_sweep_at: datetime | None = None
    last_error: str | None = None
    sweeps: int = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "sleep_length": self.sleep_length,
            "consecutive_errors": self.consecutive_errors,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
            "last_error": self.last_error,
            "sweeps": self.sweeps,
        }


class Sweeper:
    def __init__(
        self,
        store: SkylinkStore,
        dispatcher: BatchDispatcher,
        *,
        chunk_size: Optional[int] = None,
        sleep_between_scans: Optional[float] = None,
        sleep_on_err_step: Optional[float] = None,
        sleep_on_err_steps: Optional[int] = None,
    ):
        if store is None:
            raise ValueError("invalid skylink store provided")
        if dispatcher is None:
            raise ValueError("invalid dispatcher provided")
        self.store = store
        self.dispatcher = dispatcher
        self.chunk_size = int(chunk_size if chunk_size is not None else SWEEP_SETTINGS["skylinks_chunk"])
        self.sleep_between_scans = float(
            sleep_between_scans if sleep_between_scans is not None else SWEEP_SETTINGS["sleep_between_scans"]
        )
        self.sleep_on_err_step = float(
            sleep_on_err_step if sleep_on_err_step is not None else SWEEP_SETTINGS["sleep_on_err_step"]
        )
        self.sleep_on_err_steps = int(
            sleep_on_err_steps if sleep_on_err_steps is not None else SWEEP_SETTINGS["sleep_on_err_steps"]
        )
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.state = SweepState()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ------------------------------ lifecycle ------------------------------ #
    def start(self) -> None:
        if self._task and not self._task.done():  # pragma: no cover
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="skylink-sweeper")
        logger.info("Sweeper started")

    async def stop(self) -> None:
        self._stop_event.set()
        logger.info("Sweeper stop requested")
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _wait(self, seconds: float) -> bool:
        """Idle for `seconds`; returns True if a stop was requested meanwhile."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            if await self._wait(self.state.sleep_length):
                break
            try:
                outcome = await self.sweep_and_block()
            except Exception as e:
                self.record_outcome(SweepOutcome.ERROR, error=e)
                logger.error("SweepAndBlock error", error=str(e), error_type=type(e).__name__, exc_info=True)
                continue
            if outcome is SweepOutcome.CANCELLED:
                break
            self.record_outcome(outcome)
            logger.debug("SweepAndBlock ran successfully", outcome=outcome.value)
        logger.info("Sweeper stopped")

    def record_outcome(self, outcome: SweepOutcome, error: BaseException | None = None) -> float:
        """Update the error streak and idle interval after a sweep. Returns the new interval."""
        st = self.state
        st.sweeps += 1
        st.last_outcome = outcome
        st.last_sweep_at = utc_now()
        if outcome is SweepOutcome.ERROR:
            st.consecutive_errors = clamp_error_streak(st.consecutive_errors + 1, max_steps=self.sleep_on_err_steps)
            st.sleep_length = compute_sleep_on_error(
                st.consecutive_errors, step=self.sleep_on_err_step, max_steps=self.sleep_on_err_steps
            )
            st.last_error = str(error) if error is not None else None
        elif outcome is SweepOutcome.NO_WORK:
            st.consecutive_errors = 0
            st.sleep_length = self.sleep_between_scans
            st.last_error = None
        elif outcome is SweepOutcome.SUCCESS:
            # keep draining the backlog
            st.consecutive_errors = 0
            st.sleep_length = 0.0
            st.last_error = None
        return st.sleep_length

    # -------------------------------- sweep -------------------------------- #
    async def sweep_and_block(self) -> SweepOutcome:
        """Sweep the DB for new skylinks, block them in skyd and move the checkpoint.

        Note: the store always scans one skew window before the checkpoint to
        survive clock drift between the writers of skylink records.

        Raises whatever the store or skyd raise when they are unreachable;
        skylinks skyd refuses are isolated by the dispatcher instead. When skyd
        drops midway the chunk it was working on is recorded before raising.
        Store calls run in worker threads to keep the event loop free.
        """
        start = time.perf_counter()
        checkpoint = await asyncio.to_thread(self.store.latest_block_timestamp)
        skylinks = await asyncio.to_thread(self.store.skylinks_to_block)
        if not skylinks:
            await self._set_checkpoint(utc_now())
            logger.debug("No skylinks to block")
            return SweepOutcome.NO_WORK

        skylinks = sorted(skylinks, key=lambda s: s.timestamp_added)
        logger.info("Sweep found skylinks to block", count=len(skylinks))

        blocked = failed = skipped = 0
        unrecorded = False
        for idx in range(0, len(skylinks), self.chunk_size):
            if self._stop_event.is_set():
                return SweepOutcome.CANCELLED
            chunk = skylinks[idx: idx + self.chunk_size]
            outcome = await self.dispatcher.dispatch(chunk, stop_event=self._stop_event)
            if not await self._persist_chunk(outcome):
                unrecorded = True
            blocked += outcome.blocked_count
            failed += outcome.failed_count
            skipped += outcome.skipped
            if outcome.cancelled:
                return SweepOutcome.CANCELLED
            if outcome.latest_timestamp is not None and outcome.latest_timestamp > checkpoint:
                if await self._set_checkpoint(outcome.latest_timestamp):
                    checkpoint = outcome.latest_timestamp
            if outcome.error is not None:
                # what skyd accepted is recorded above, the sweep still fails
                raise outcome.error

        # advance past failed skylinks too, they stay retryable inside the skew window
        await self._set_checkpoint(utc_now())

        duration_ms = (time.perf_counter() - start) * 1000
        log_performance(
            operation="sweep_and_block",
            duration_ms=duration_ms,
            additional_data={"blocked": blocked, "failed": failed, "skipped": skipped},
        )
        logger.info("Sweep completed", blocked=blocked, failed=failed, skipped=skipped)
        if unrecorded:
            # skyd would accept the same skylinks again on the next sweep
            logger.warning("Sweep blocked skylinks it could not record, backing off to the quiet interval", blocked=blocked)
            return SweepOutcome.NO_WORK
        if blocked == 0:
            # Only failing or empty records left; retry them at the quiet cadence.
            return SweepOutcome.NO_WORK
        return SweepOutcome.SUCCESS

    async def _persist_chunk(self, outcome: DispatchOutcome) -> bool:
        """Record the chunk in the store. False if the blocked skylinks could not be marked."""
        recorded = True
        try:
            await asyncio.to_thread(self.store.mark_blocked, outcome.blocked)
        except Exception as e:
            recorded = False
            logger.error("Failed to mark skylinks as blocked", count=outcome.blocked_count, error=str(e))
        try:
            await asyncio.to_thread(self.store.mark_failed, outcome.failed)
        except Exception as e:
            logger.error("Failed to mark skylinks as failed", count=outcome.failed_count, error=str(e))
        return recorded

    async def _set_checkpoint(self, timestamp: datetime) -> bool:
        try:
            await asyncio.to_thread(self.store.set_latest_block_timestamp, timestamp)
        except Exception as e:
            logger.error("Failed to update latest block timestamp", timestamp=timestamp.isoformat(), error=str(e))
            return False
        return True


__all__ = ["Sweeper", "SweepOutcome", "SweepState"]
