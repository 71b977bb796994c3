"""
SQLAlchemy models for call attempts and the call queue.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from voicejournal.shared.database import Base


class CallAttemptStatus(str, Enum):
    """Disposition of a (user, date) call attempt."""

    PENDING = "pending"
    MISSED = "missed"
    COMPLETED = "completed"
    FAILED = "failed"


class CallSource(str, Enum):
    """Who asked for the attempt."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


TERMINAL_STATUSES = frozenset(
    {CallAttemptStatus.MISSED, CallAttemptStatus.COMPLETED, CallAttemptStatus.FAILED}
)


class CallAttempt(Base):
    """One intended reflection call for a user on a date."""

    __tablename__ = "call_attempts"
    __table_args__ = (UniqueConstraint("user_id", "on_date", name="uq_call_attempt_user_date"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    on_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[CallSource] = mapped_column(
        SQLEnum(CallSource, name="call_source"),
        nullable=False,
        default=CallSource.SCHEDULED,
    )
    status: Mapped[CallAttemptStatus] = mapped_column(
        SQLEnum(CallAttemptStatus, name="call_attempt_status"),
        nullable=False,
        default=CallAttemptStatus.PENDING,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resulting_entry_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<CallAttempt(id={self.id}, user_id={self.user_id}, on_date={self.on_date}, "
            f"status={self.status}, attempt_count={self.attempt_count})>"
        )


class CallQueueEntry(Base):
    """FIFO queue membership. At most one row per attempt."""

    __tablename__ = "call_queue"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    attempt_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("call_attempts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<CallQueueEntry(seq={self.seq}, attempt_id={self.attempt_id})>"
