"""Persistence for reported skylinks and the sweep checkpoint.

`SkylinkStore` is the only component that talks to the database on behalf of
the sweeper. Every method opens its own short lived session from the given
session factory so the store can be shared between the sweeper task and the
HTTP handlers.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from blocker.config import SWEEP_SETTINGS
from blocker.models.db import BlockedSkylink, LatestBlockTimestamp, CHECKPOINT_ROW_ID
from blocker.utils import get_logger
from blocker.utils.time import EPOCH, ensure_utc, to_storage, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PendingSkylink:
    skylink: str
    timestamp_added: datetime


class SkylinkStore:
    def __init__(self, session_factory: Callable[[], Session], *, skew_tolerance: Optional[timedelta] = None):
        if session_factory is None:
            raise ValueError("invalid session factory provided")
        self._session_factory = session_factory
        if skew_tolerance is None:
            skew_tolerance = timedelta(seconds=float(SWEEP_SETTINGS["scan_skew_tolerance_seconds"]))
        self.skew_tolerance = skew_tolerance

    # ------------------------------ checkpoint ------------------------------ #
    def latest_block_timestamp(self) -> datetime:
        """Checkpoint of the last sweep; the UNIX epoch if none was ever written."""
        with self._session_factory() as session:
            row = session.get(LatestBlockTimestamp, CHECKPOINT_ROW_ID)
            if row is None:
                return EPOCH
            return ensure_utc(row.timestamp)

    def set_latest_block_timestamp(self, timestamp: datetime) -> None:
        with self._session_factory() as session:
            row = session.get(LatestBlockTimestamp, CHECKPOINT_ROW_ID)
            if row is None:
                session.add(LatestBlockTimestamp(id=CHECKPOINT_ROW_ID, timestamp=to_storage(timestamp)))
            else:
                row.timestamp = to_storage(timestamp)
            session.commit()

    # ------------------------------- skylinks ------------------------------- #
    def skylinks_to_block(self) -> list[PendingSkylink]:
        """Skylinks added after (checkpoint - skew tolerance) that skyd hasn't accepted yet.

        Ordered by the time they were added, oldest first. An empty list means
        there is nothing to do.
        """
        since = self.latest_block_timestamp() - self.skew_tolerance
        stmt = (
            select(BlockedSkylink.skylink, BlockedSkylink.timestamp_added)
            .where(BlockedSkylink.timestamp_added > to_storage(since))
            .where(BlockedSkylink.blocked_at.is_(None))
            .order_by(BlockedSkylink.timestamp_added.asc(), BlockedSkylink.id.asc())
        )
        with self._session_factory() as session:
            rows = session.execute(stmt).all()
        return [PendingSkylink(skylink=r.skylink, timestamp_added=ensure_utc(r.timestamp_added)) for r in rows]

    def mark_blocked(self, skylinks: Iterable[str], at: Optional[datetime] = None) -> int:
        skylinks = list(skylinks)
        if not skylinks:
            return 0
        stmt = (
            update(BlockedSkylink)
            .where(BlockedSkylink.skylink.in_(skylinks))
            .values(blocked_at=to_storage(at or utc_now()), failed=False)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0

    def mark_failed(self, skylinks: Iterable[str]) -> int:
        skylinks = list(skylinks)
        if not skylinks:
            return 0
        stmt = (
            update(BlockedSkylink)
            .where(BlockedSkylink.skylink.in_(skylinks))
            .values(failed=True, failed_attempts=BlockedSkylink.failed_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0

    def add_skylink(
        self,
        skylink: str,
        *,
        reporter_name: Optional[str] = None,
        reporter_email: Optional[str] = None,
        reporter_other_contact: Optional[str] = None,
        tags: Optional[list[str]] = None,
        timestamp_added: Optional[datetime] = None,
    ) -> tuple[BlockedSkylink, bool]:
        """Insert a skylink to block. Returns (record, created); re-reports are no-ops."""
        with self._session_factory() as session:
            existing = session.execute(
                select(BlockedSkylink).where(BlockedSkylink.skylink == skylink)
            ).scalar_one_or_none()
            if existing is not None:
                return existing, False
            record = BlockedSkylink(
                skylink=skylink,
                reporter_name=reporter_name,
                reporter_email=reporter_email,
                reporter_other_contact=reporter_other_contact,
                tags=tags or [],
                timestamp_added=to_storage(timestamp_added or utc_now()),
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race with a concurrent report of the same skylink.
                session.rollback()
                existing = session.execute(
                    select(BlockedSkylink).where(BlockedSkylink.skylink == skylink)
                ).scalar_one()
                return existing, False
            session.refresh(record)
            logger.info("Skylink reported for blocking", skylink=skylink, tags=tags or None)
            return record, True


__all__ = ["PendingSkylink", "SkylinkStore"]
