"""
Repository for call window database operations.
"""

from collections.abc import Sequence
from datetime import date, time

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from voicejournal.shared.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    OperationResult,
    ValidationError,
)
from voicejournal.shared.logging import get_logger
from voicejournal.windows.models import DayMode, OneOffCallWindow, RecurringCallWindow, Weekday

logger = get_logger(__name__)


def _check_range(start_time: time, end_time: time) -> ValidationError | None:
    if end_time <= start_time:
        return ValidationError(
            message="end_time must be later than start_time",
            details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )
    return None


class CallWindowRepository:
    """Repository for recurring windows, one-off windows and day modes."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    async def create_recurring(
        self,
        user_id: str,
        weekday: Weekday,
        start_time: time,
        end_time: time,
    ) -> OperationResult[RecurringCallWindow]:
        """Create a weekly window.

        Args:
            user_id: Owner of the window.
            weekday: Day of week the window repeats on.
            start_time: Local start time.
            end_time: Local end time, strictly after start_time.

        Returns:
            Result carrying the created window, or ValidationError /
            AlreadyExistsError.
        """
        error = _check_range(start_time, end_time)
        if error is not None:
            return OperationResult.failure(error)

        existing = await self._session.execute(
            select(RecurringCallWindow.id).where(
                RecurringCallWindow.user_id == user_id,
                RecurringCallWindow.weekday == int(weekday),
                RecurringCallWindow.start_time == start_time,
            )
        )
        if existing.first() is not None:
            return OperationResult.failure(
                AlreadyExistsError(
                    message="A recurring window already exists at this start time",
                    details={"user_id": user_id, "weekday": Weekday(weekday).name},
                )
            )

        window = RecurringCallWindow(
            user_id=user_id,
            weekday=int(weekday),
            start_time=start_time,
            end_time=end_time,
        )
        self._session.add(window)
        await self._session.flush()
        return OperationResult.success(window)

    async def create_one_off(
        self,
        user_id: str,
        on_date: date,
        start_time: time,
        end_time: time,
    ) -> OperationResult[OneOffCallWindow]:
        """Create a window for a single date."""
        error = _check_range(start_time, end_time)
        if error is not None:
            return OperationResult.failure(error)

        existing = await self._session.execute(
            select(OneOffCallWindow.id).where(
                OneOffCallWindow.user_id == user_id,
                OneOffCallWindow.on_date == on_date,
                OneOffCallWindow.start_time == start_time,
            )
        )
        if existing.first() is not None:
            return OperationResult.failure(
                AlreadyExistsError(
                    message="A one-off window already exists at this start time",
                    details={"user_id": user_id, "on_date": on_date.isoformat()},
                )
            )

        window = OneOffCallWindow(
            user_id=user_id,
            on_date=on_date,
            start_time=start_time,
            end_time=end_time,
        )
        self._session.add(window)
        await self._session.flush()
        return OperationResult.success(window)

    async def delete_recurring(
        self,
        user_id: str,
        weekday: Weekday,
        start_time: time,
    ) -> OperationResult[None]:
        result = await self._session.execute(
            delete(RecurringCallWindow).where(
                RecurringCallWindow.user_id == user_id,
                RecurringCallWindow.weekday == int(weekday),
                RecurringCallWindow.start_time == start_time,
            )
        )
        if result.rowcount == 0:
            return OperationResult.failure(NotFoundError(message="Recurring window not found"))
        return OperationResult.success()

    async def delete_one_off(
        self,
        user_id: str,
        on_date: date,
        start_time: time,
    ) -> OperationResult[None]:
        result = await self._session.execute(
            delete(OneOffCallWindow).where(
                OneOffCallWindow.user_id == user_id,
                OneOffCallWindow.on_date == on_date,
                OneOffCallWindow.start_time == start_time,
            )
        )
        if result.rowcount == 0:
            return OperationResult.failure(NotFoundError(message="One-off window not found"))
        return OperationResult.success()

    async def merge_one_off(
        self,
        user_id: str,
        on_date: date,
        start_time: time,
        end_time: time,
    ) -> OperationResult[OneOffCallWindow]:
        """Replace every one-off window overlapping [start, end) with one window.

        The merged window spans the earliest start and the latest end of the
        overlapping windows and the given range.
        """
        error = _check_range(start_time, end_time)
        if error is not None:
            return OperationResult.failure(error)

        windows = await self.list_one_off(user_id, on_date)
        overlapping = [w for w in windows if w.start_time < end_time and w.end_time > start_time]
        if not overlapping:
            return OperationResult.failure(
                NotFoundError(
                    message="No overlapping one-off windows to merge",
                    details={"user_id": user_id, "on_date": on_date.isoformat()},
                )
            )

        merged_start = min([start_time, *(w.start_time for w in overlapping)])
        merged_end = max([end_time, *(w.end_time for w in overlapping)])

        for window in overlapping:
            await self._session.delete(window)
        await self._session.flush()

        merged = OneOffCallWindow(
            user_id=user_id,
            on_date=on_date,
            start_time=merged_start,
            end_time=merged_end,
        )
        self._session.add(merged)
        await self._session.flush()

        logger.info(
            "Merged one-off windows",
            extra={
                "user_id": user_id,
                "on_date": on_date.isoformat(),
                "merged_count": len(overlapping),
            },
        )
        return OperationResult.success(merged)

    async def set_day_mode(self, user_id: str, on_date: date, use_recurring: bool) -> DayMode:
        """Upsert the recurring/custom switch for one date."""
        row = await self.get_day_mode(user_id, on_date)
        if row is None:
            row = DayMode(user_id=user_id, on_date=on_date, use_recurring=use_recurring)
            self._session.add(row)
        else:
            row.use_recurring = use_recurring
        await self._session.flush()
        return row

    async def get_day_mode(self, user_id: str, on_date: date) -> DayMode | None:
        result = await self._session.execute(
            select(DayMode).where(DayMode.user_id == user_id, DayMode.on_date == on_date)
        )
        return result.scalar_one_or_none()

    async def list_recurring(
        self,
        user_id: str,
        weekday: Weekday | None = None,
    ) -> Sequence[RecurringCallWindow]:
        stmt = select(RecurringCallWindow).where(RecurringCallWindow.user_id == user_id)
        if weekday is not None:
            stmt = stmt.where(RecurringCallWindow.weekday == int(weekday))
        result = await self._session.execute(stmt.order_by(RecurringCallWindow.start_time))
        return result.scalars().all()

    async def list_one_off(self, user_id: str, on_date: date | None = None) -> Sequence[OneOffCallWindow]:
        stmt = select(OneOffCallWindow).where(OneOffCallWindow.user_id == user_id)
        if on_date is not None:
            stmt = stmt.where(OneOffCallWindow.on_date == on_date)
        result = await self._session.execute(stmt.order_by(OneOffCallWindow.start_time))
        return result.scalars().all()

    async def list_users_with_windows(self) -> list[str]:
        """Distinct users owning at least one window of either kind."""
        recurring = await self._session.execute(select(RecurringCallWindow.user_id).distinct())
        one_off = await self._session.execute(select(OneOffCallWindow.user_id).distinct())
        return sorted(set(recurring.scalars().all()) | set(one_off.scalars().all()))
