"""SQLAlchemy models for call history and the channel cache."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class CallRecord(Base):
    """Summary of a finished call. Written once, never updated."""

    __tablename__ = "call_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    channel_id: Mapped[str] = mapped_column(String(64), index=True)
    caller_id: Mapped[str | None] = mapped_column(String(64))
    caller_name: Mapped[str | None] = mapped_column(String(255))
    call_type: Mapped[str] = mapped_column(String(16), default="voip")
    direction: Mapped[str] = mapped_column(String(16))
    started_at: Mapped[datetime] = mapped_column(index=True)
    ended_at: Mapped[datetime | None] = mapped_column()
    is_emergency: Mapped[bool] = mapped_column(default=False)
    participants_count: Mapped[int] = mapped_column(default=0)
    is_successful: Mapped[bool] = mapped_column(default=False)
    end_reason: Mapped[str | None] = mapped_column(String(32))
    failure_reason: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(timezone.utc))

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return max(0.0, (self.ended_at - self.started_at).total_seconds())


class ChannelCache(Base):
    """Local copy of a backend channel."""

    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text())
    facility_id: Mapped[str | None] = mapped_column(String(64), index=True)
    is_emergency: Mapped[bool] = mapped_column(default=False)
    is_active: Mapped[bool] = mapped_column(default=True)
    allow_ptt: Mapped[bool] = mapped_column(default=True)
    allow_voip: Mapped[bool] = mapped_column(default=True)
    max_participants: Mapped[int | None] = mapped_column()
    refreshed_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(timezone.utc))
