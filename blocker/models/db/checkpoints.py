"""Single row table holding the sweep checkpoint."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from blocker.database import Base

CHECKPOINT_ROW_ID = 1


class LatestBlockTimestamp(Base):
    __tablename__ = "latest_block_timestamps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
