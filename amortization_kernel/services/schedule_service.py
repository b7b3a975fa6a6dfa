"""
ScheduleService -- materialize recognition plans as journal entry rows.

Contract:
    - create_schedule(record) validates, generates and persists the schedule
      together with all of its entries in one transaction.
    - regenerate_entries(schedule_id, ...) replaces the plan of a schedule
      whose dates or amount changed.  Refused once anything is posted.
    - preview(start, end, total) returns the plan without touching storage.

Invariants enforced:
    - Generation runs before any write; invalid input is never persisted.
    - A schedule's entries always come from a single generate_schedule()
      call, so their amounts sum to the schedule total.

Failure modes:
    - InvalidRangeError / InvalidAmountError from the generator.
    - InvalidScheduleError: account codes missing for the schedule type.
    - ScheduleNotFoundError / ScheduleLockedError on regeneration.
    - StorageError when the write cannot be committed.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from amortization_kernel.db.engine import transactional
from amortization_kernel.domain.clock import Clock, SystemClock
from amortization_kernel.domain.dtos import (
    JournalEntryRecord,
    SchedulePeriod,
    ScheduleRecord,
    ScheduleType,
)
from amortization_kernel.domain.schedule_generator import generate_schedule
from amortization_kernel.exceptions import (
    InvalidScheduleError,
    ScheduleLockedError,
    ScheduleNotFoundError,
    StorageError,
)
from amortization_kernel.logging_config import get_logger
from amortization_kernel.repositories.schedules import (
    JournalEntryRepository,
    ScheduleRepository,
)

logger = get_logger("services.schedule_service")


def _check_accounts(record: ScheduleRecord) -> None:
    if not record.deferral_acct_code:
        raise InvalidScheduleError(str(record.id), "deferral account code is required")
    try:
        schedule_type = ScheduleType(record.schedule_type)
    except ValueError as exc:
        raise InvalidScheduleError(
            str(record.id), f"unknown schedule type {record.schedule_type!r}",
        ) from exc
    if schedule_type == ScheduleType.PREPAID and not record.expense_acct_code:
        raise InvalidScheduleError(str(record.id), "PREPAID schedule needs an expense account code")
    if schedule_type == ScheduleType.UNEARNED and not record.revenue_acct_code:
        raise InvalidScheduleError(str(record.id), "UNEARNED schedule needs a revenue account code")


class ScheduleService:
    """Writes schedules and their generated entries."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @staticmethod
    def preview(
        start_date: date,
        end_date: date,
        total_amount: Decimal | int | str,
    ) -> tuple[SchedulePeriod, ...]:
        return generate_schedule(start_date, end_date, total_amount)

    def create_schedule(self, record: ScheduleRecord) -> list[JournalEntryRecord]:
        _check_accounts(record)
        periods = generate_schedule(record.start_date, record.end_date, record.total_amount)
        now = self._clock.now_utc()
        record = replace(
            record,
            total_amount=sum((p.amount for p in periods), Decimal("0.00")),
            created_at=record.created_at or now,
        )
        entries = self._entries_for(record.id, periods)

        try:
            with transactional(self._session_factory) as session:
                ScheduleRepository(session).add(record)
                JournalEntryRepository(session).add_many(entries)
        except SQLAlchemyError as exc:
            raise StorageError("create_schedule", type(exc).__name__) from exc

        logger.info(
            "schedule_created",
            extra={
                "schedule_id": str(record.id),
                "tenant_id": record.tenant_id,
                "schedule_type": ScheduleType(record.schedule_type).value,
                "entry_count": len(entries),
                "total_amount": record.total_amount,
            },
        )
        return entries

    def regenerate_entries(
        self,
        schedule_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        total_amount: Decimal | int | str | None = None,
    ) -> list[JournalEntryRecord]:
        """Apply new dates/amount (if given) and rebuild every entry."""
        try:
            with transactional(self._session_factory) as session:
                schedules = ScheduleRepository(session)
                entries_repo = JournalEntryRepository(session)

                current = schedules.get(schedule_id)
                if current is None:
                    raise ScheduleNotFoundError(str(schedule_id))
                posted = entries_repo.count_posted(schedule_id)
                if posted:
                    raise ScheduleLockedError(str(schedule_id), posted)

                periods = generate_schedule(
                    start_date or current.start_date,
                    end_date or current.end_date,
                    current.total_amount if total_amount is None else total_amount,
                )
                updated = replace(
                    current,
                    start_date=start_date or current.start_date,
                    end_date=end_date or current.end_date,
                    total_amount=sum((p.amount for p in periods), Decimal("0.00")),
                )
                removed = entries_repo.delete_for_schedule(schedule_id)
                schedules.update_plan(updated)
                entries = self._entries_for(schedule_id, periods)
                entries_repo.add_many(entries)
        except SQLAlchemyError as exc:
            raise StorageError("regenerate_entries", type(exc).__name__) from exc

        logger.info(
            "schedule_entries_regenerated",
            extra={
                "schedule_id": str(schedule_id),
                "removed": removed,
                "entry_count": len(entries),
            },
        )
        return entries

    def _entries_for(
        self,
        schedule_id: UUID,
        periods: tuple[SchedulePeriod, ...],
    ) -> list[JournalEntryRecord]:
        now = self._clock.now_utc()
        return [
            JournalEntryRecord(
                id=uuid4(),
                schedule_id=schedule_id,
                period_date=period.posting_date,
                amount=period.amount,
                created_at=now,
            )
            for period in periods
        ]
