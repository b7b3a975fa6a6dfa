"""
ORM models for schedules and their journal entries.

Contract:
    ScheduleModel and JournalEntryModel persist recognition plans.  Each has
    ``to_dto()`` / ``from_dto()`` round-trip methods.

Architecture: amortization_kernel/models.  Imports from db/ and domain/dtos.

Invariants enforced:
    - A journal entry references its schedule by ``schedule_id`` only; there
      is no ORM relationship, so nothing is lazy-loaded.
    - (schedule_id, period_date) is UNIQUE: one entry per schedule month.
    - ``posted`` only ever moves false -> true (see JournalEntryRepository).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from amortization_kernel.db.base import TimestampedBase, UUIDString
from amortization_kernel.domain.clock import ensure_utc
from amortization_kernel.domain.dtos import (
    JournalEntryRecord,
    ScheduleRecord,
    ScheduleType,
)


class ScheduleModel(TimestampedBase):
    """Persistent recognition schedule."""

    __tablename__ = "schedules"

    __table_args__ = (
        Index("ix_schedules_tenant_id", "tenant_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    schedule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(19, 2), nullable=False)
    expense_acct_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    revenue_acct_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    deferral_acct_code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> ScheduleRecord:
        return ScheduleRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            schedule_type=ScheduleType(self.schedule_type),
            start_date=self.start_date,
            end_date=self.end_date,
            total_amount=Decimal(self.total_amount),
            deferral_acct_code=self.deferral_acct_code,
            expense_acct_code=self.expense_acct_code,
            revenue_acct_code=self.revenue_acct_code,
            description=self.description,
            created_at=ensure_utc(self.created_at),
        )

    @classmethod
    def from_dto(cls, dto: ScheduleRecord) -> ScheduleModel:
        model = cls(
            id=dto.id,
            tenant_id=dto.tenant_id,
            schedule_type=ScheduleType(dto.schedule_type).value,
            start_date=dto.start_date,
            end_date=dto.end_date,
            total_amount=dto.total_amount,
            expense_acct_code=dto.expense_acct_code,
            revenue_acct_code=dto.revenue_acct_code,
            deferral_acct_code=dto.deferral_acct_code,
            description=dto.description,
        )
        if dto.created_at is not None:
            model.created_at = dto.created_at
        return model


class JournalEntryModel(TimestampedBase):
    """One period's recognition amount for a schedule."""

    __tablename__ = "journal_entries"

    __table_args__ = (
        UniqueConstraint("schedule_id", "period_date", name="uq_journal_entries_schedule_period"),
        Index("ix_journal_entries_due", "posted", "period_date"),
    )

    schedule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("schedules.id"), nullable=False,
    )
    period_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 2), nullable=False)
    external_journal_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    posted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> JournalEntryRecord:
        return JournalEntryRecord(
            id=self.id,
            schedule_id=self.schedule_id,
            period_date=self.period_date,
            amount=Decimal(self.amount),
            posted=bool(self.posted),
            external_journal_id=self.external_journal_id,
            posted_at=ensure_utc(self.posted_at),
            created_at=ensure_utc(self.created_at),
        )

    @classmethod
    def from_dto(cls, dto: JournalEntryRecord) -> JournalEntryModel:
        model = cls(
            id=dto.id,
            schedule_id=dto.schedule_id,
            period_date=dto.period_date,
            amount=dto.amount,
            posted=dto.posted,
            external_journal_id=dto.external_journal_id,
            posted_at=dto.posted_at,
        )
        if dto.created_at is not None:
            model.created_at = dto.created_at
        return model
