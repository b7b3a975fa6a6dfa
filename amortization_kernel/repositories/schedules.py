"""
Schedule and journal entry repositories.

Invariants enforced:
    - mark_posted() is a conditional UPDATE (``WHERE posted = false``) that
      sets posted, external_journal_id and posted_at together; a second call
      for the same entry changes nothing and reports False.
    - Listing is ordered (period_date, schedule_id, id) so runs are
      reproducible.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update

from amortization_kernel.domain.dtos import JournalEntryRecord, ScheduleRecord
from amortization_kernel.models.schedule import JournalEntryModel, ScheduleModel
from amortization_kernel.repositories.base import BaseRepository


class ScheduleRepository(BaseRepository):

    def get(self, schedule_id: UUID) -> ScheduleRecord | None:
        model = self.session.get(ScheduleModel, schedule_id)
        return model.to_dto() if model is not None else None

    def list_all(self) -> list[ScheduleRecord]:
        rows = self.session.execute(
            select(ScheduleModel).order_by(ScheduleModel.tenant_id, ScheduleModel.id)
        ).scalars()
        return [row.to_dto() for row in rows]

    def add(self, record: ScheduleRecord) -> None:
        self.session.add(ScheduleModel.from_dto(record))
        self.session.flush()

    def update_plan(self, record: ScheduleRecord) -> None:
        """Overwrite the mutable plan fields of an existing schedule."""
        self.session.execute(
            update(ScheduleModel)
            .where(ScheduleModel.id == record.id)
            .values(
                start_date=record.start_date,
                end_date=record.end_date,
                total_amount=record.total_amount,
                expense_acct_code=record.expense_acct_code,
                revenue_acct_code=record.revenue_acct_code,
                deferral_acct_code=record.deferral_acct_code,
                description=record.description,
            )
        )


class JournalEntryRepository(BaseRepository):

    def list_all(self) -> list[JournalEntryRecord]:
        rows = self.session.execute(
            select(JournalEntryModel).order_by(
                JournalEntryModel.period_date,
                JournalEntryModel.schedule_id,
                JournalEntryModel.id,
            )
        ).scalars()
        return [row.to_dto() for row in rows]

    def list_for_schedule(self, schedule_id: UUID) -> list[JournalEntryRecord]:
        rows = self.session.execute(
            select(JournalEntryModel)
            .where(JournalEntryModel.schedule_id == schedule_id)
            .order_by(JournalEntryModel.period_date)
        ).scalars()
        return [row.to_dto() for row in rows]

    def add_many(self, records: list[JournalEntryRecord]) -> None:
        self.session.add_all([JournalEntryModel.from_dto(r) for r in records])
        self.session.flush()

    def delete_for_schedule(self, schedule_id: UUID) -> int:
        result = self.session.execute(
            delete(JournalEntryModel).where(JournalEntryModel.schedule_id == schedule_id)
        )
        return result.rowcount

    def count_posted(self, schedule_id: UUID) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(JournalEntryModel)
            .where(
                JournalEntryModel.schedule_id == schedule_id,
                JournalEntryModel.posted.is_(True),
            )
        ).scalar_one()

    def get(self, entry_id: UUID) -> JournalEntryRecord | None:
        model = self.session.get(JournalEntryModel, entry_id)
        return model.to_dto() if model is not None else None

    def is_posted(self, entry_id: UUID) -> bool | None:
        """Posted flag of one entry, or None if the row no longer exists."""
        posted = self.session.execute(
            select(JournalEntryModel.posted).where(JournalEntryModel.id == entry_id)
        ).scalar_one_or_none()
        return None if posted is None else bool(posted)

    def mark_posted(
        self,
        entry_id: UUID,
        external_journal_id: str,
        posted_at: datetime,
    ) -> bool:
        """Flip an entry to posted.  Returns False if it already was."""
        result = self.session.execute(
            update(JournalEntryModel)
            .where(
                JournalEntryModel.id == entry_id,
                JournalEntryModel.posted.is_(False),
            )
            .values(
                posted=True,
                external_journal_id=external_journal_id,
                posted_at=posted_at,
            )
        )
        return result.rowcount == 1
