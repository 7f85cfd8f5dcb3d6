"""SQLAlchemy model for reported skylinks waiting to be (or already) blocked."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, DateTime, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column

from blocker.database import Base


class BlockedSkylink(Base):
    __tablename__ = "skylinks"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    skylink: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    reporter_name: Mapped[str | None] = mapped_column(String, nullable=True)
    reporter_email: Mapped[str | None] = mapped_column(String, nullable=True)
    reporter_other_contact: Mapped[str | None] = mapped_column(String, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    # Naive UTC, see blocker.utils.time.to_storage
    timestamp_added: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    failed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
