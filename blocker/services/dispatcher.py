"""Batch dispatch of skylinks to skyd with failure isolation.

Skyd accepts or rejects a whole request. When a batch is rejected we split it
in half and try both halves, recursively, until the offending skylinks are
alone in their batch. Best case (nothing fails) costs a single request; worst
case one request per skylink plus the splits above it.

The bisection runs on index ranges over one immutable tuple with an explicit
stack, so no sub-lists are built until a range is actually submitted. Ranges
are popped in input order, which keeps submissions ordered by the time the
skylinks were added.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from blocker.services.cache_purge import NginxCachePurger
from blocker.services.skyd import BlockingAuthority, BlocklistRejectedError, SkydUnreachableError
from blocker.services.skylink_store import PendingSkylink
from blocker.utils import get_logger

logger = get_logger(__name__)


@dataclass
class DispatchOutcome:
    blocked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: int = 0
    # Newest timestamp_added among skylinks accepted before the first failure.
    latest_timestamp: Optional[datetime] = None
    requests: int = 0
    cancelled: bool = False
    # Set when skyd became unreachable midway; the fields above hold what got done before.
    error: Optional[SkydUnreachableError] = None

    @property
    def blocked_count(self) -> int:
        return len(self.blocked)

    @property
    def failed_count(self) -> int:
        return len(self.failed)


class BatchDispatcher:
    def __init__(self, authority: BlockingAuthority, purger: Optional[NginxCachePurger] = None):
        if authority is None:
            raise ValueError("invalid blocking authority provided")
        self.authority = authority
        self.purger = purger

    async def dispatch(
        self,
        items: Sequence[PendingSkylink],
        stop_event: Optional[asyncio.Event] = None,
    ) -> DispatchOutcome:
        """Block the given skylinks, isolating the ones skyd refuses.

        Items are expected in ascending timestamp_added order. Items with an
        empty skylink are skipped, they count as neither blocked nor failed.

        When skyd becomes unreachable the dispatch stops right there and the
        partial outcome is returned with `error` set, so the caller can record
        what skyd already accepted before failing the sweep.
        """
        outcome = DispatchOutcome()
        eligible: list[PendingSkylink] = []
        for item in items:
            if not item.skylink:
                logger.warning(
                    "Skipping record with an empty skylink",
                    timestamp_added=item.timestamp_added.isoformat(),
                )
                outcome.skipped += 1
                continue
            eligible.append(item)
        if not eligible:
            return outcome

        pending = tuple(eligible)
        first_failure_seen = False
        stack: list[tuple[int, int]] = [(0, len(pending))]
        while stack:
            if stop_event is not None and stop_event.is_set():
                outcome.cancelled = True
                logger.info("Dispatch interrupted by shutdown", blocked=outcome.blocked_count, remaining=_remaining(stack))
                break
            lo, hi = stack.pop()
            batch = [p.skylink for p in pending[lo:hi]]
            outcome.requests += 1
            try:
                await self.authority.block_skylinks(batch)
            except SkydUnreachableError as e:
                outcome.error = e
                logger.warning(
                    "Skyd unreachable, dispatch stopped",
                    blocked=outcome.blocked_count,
                    remaining=hi - lo + _remaining(stack),
                    error=str(e),
                )
                break
            except BlocklistRejectedError as e:
                if hi - lo == 1:
                    first_failure_seen = True
                    outcome.failed.append(batch[0])
                    logger.warning("Failed to block skylink", skylink=batch[0], error=str(e))
                    continue
                mid = lo + (hi - lo) // 2
                logger.debug("Skyd rejected batch, splitting", size=hi - lo, error=str(e))
                # right half first so the left half is popped (submitted) first
                stack.append((mid, hi))
                stack.append((lo, mid))
                continue

            outcome.blocked.extend(batch)
            if not first_failure_seen:
                newest = max(p.timestamp_added for p in pending[lo:hi])
                if outcome.latest_timestamp is None or newest > outcome.latest_timestamp:
                    outcome.latest_timestamp = newest
            await self._purge_from_cache(batch, stop_event)

        logger.debug(
            "Dispatch finished",
            blocked=outcome.blocked_count,
            failed=outcome.failed_count,
            skipped=outcome.skipped,
            requests=outcome.requests,
        )
        return outcome

    async def _purge_from_cache(self, skylinks: list[str], stop_event: Optional[asyncio.Event] = None) -> None:
        if self.purger is None:
            return
        try:
            await self.purger.append(skylinks, stop_event=stop_event)
        except Exception as e:
            logger.warning("Failed to write to nginx cache purger's list", error=str(e), count=len(skylinks))


def _remaining(stack: list[tuple[int, int]]) -> int:
    return sum(hi - lo for lo, hi in stack)


__all__ = ["BatchDispatcher", "DispatchOutcome"]
