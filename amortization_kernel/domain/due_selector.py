"""
DueEntrySelector -- which entries a posting run should attempt.

Contract:
    select_due_entries(as_of, entries) returns the entries whose
    period_date <= as_of and which are not yet posted, ordered by
    (period_date, schedule_id, id).

Invariants enforced:
    - Never returns a posted entry or one dated after ``as_of``.
    - An entry with a missing or non-date period_date is skipped and logged
      (``due_entry_invalid_period_date``); it never raises.

Architecture position:
    Kernel > Domain -- pure apart from the warning log.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable

from amortization_kernel.domain.dtos import JournalEntryRecord
from amortization_kernel.logging_config import get_logger

logger = get_logger("domain.due_selector")


def _valid_period_date(value: object) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def select_due_entries(
    as_of: date,
    entries: Iterable[JournalEntryRecord],
) -> list[JournalEntryRecord]:
    due: list[JournalEntryRecord] = []
    for entry in entries:
        if not _valid_period_date(entry.period_date):
            logger.warning(
                "due_entry_invalid_period_date",
                extra={
                    "entry_id": str(entry.id),
                    "schedule_id": str(entry.schedule_id),
                    "period_date": repr(entry.period_date),
                },
            )
            continue
        if entry.posted:
            continue
        if entry.period_date <= as_of:
            due.append(entry)

    due.sort(key=lambda e: (e.period_date, str(e.schedule_id), str(e.id)))
    return due
