"""
SQLAlchemy models for user call windows.
"""

from datetime import date, datetime, time
from enum import IntEnum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Date, DateTime, Integer, String, Time, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from voicejournal.shared.database import Base


class Weekday(IntEnum):
    """Day of week, matching ``date.weekday()``."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class RecurringCallWindow(Base):
    """A window that repeats every week on the same weekday."""

    __tablename__ = "recurring_call_windows"
    __table_args__ = (
        UniqueConstraint("user_id", "weekday", "start_time", name="uq_recurring_window_start"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringCallWindow(user_id={self.user_id}, weekday={self.weekday}, "
            f"{self.start_time}-{self.end_time})>"
        )


class OneOffCallWindow(Base):
    """A window that applies to a single calendar date."""

    __tablename__ = "one_off_call_windows"
    __table_args__ = (
        UniqueConstraint("user_id", "on_date", "start_time", name="uq_one_off_window_start"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    on_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<OneOffCallWindow(user_id={self.user_id}, on_date={self.on_date}, "
            f"{self.start_time}-{self.end_time})>"
        )


class DayMode(Base):
    """Per-date switch between recurring and one-off windows."""

    __tablename__ = "call_window_day_modes"
    __table_args__ = (UniqueConstraint("user_id", "on_date", name="uq_day_mode_user_date"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    on_date: Mapped[date] = mapped_column(Date, nullable=False)
    use_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<DayMode(user_id={self.user_id}, on_date={self.on_date}, use_recurring={self.use_recurring})>"
