"""
ScheduleGenerator -- pro-rata monthly recognition plan.

Contract:
    generate_schedule(start_date, end_date, total_amount) returns one
    SchedulePeriod per calendar month touched by [start_date, end_date],
    ordered by posting date.

Invariants enforced:
    - Sum of period amounts == total_amount exactly.
    - Non-final periods are round_money(total * days / total_days), half-up.
      The final period takes total minus everything allocated before it;
      rounding differences are never spread over other periods.
    - posting_date is the month's last day, except the final period, which
      posts on end_date.
    - Periods are contiguous: each starts the day after the previous ends.

Failure modes:
    - InvalidRangeError if start_date > end_date.
    - InvalidAmountError if total_amount is not a positive whole-cent amount.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from amortization_kernel.db.types import MAX_MONEY, ZERO, is_whole_cents, round_money, to_decimal
from amortization_kernel.domain.dtos import SchedulePeriod
from amortization_kernel.exceptions import InvalidAmountError, InvalidRangeError


def month_end(day: date) -> date:
    """Last calendar day of ``day``'s month."""
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def months_spanned(start_date: date, end_date: date) -> int:
    """Number of distinct calendar months touched by [start_date, end_date]."""
    return (end_date.year - start_date.year) * 12 + end_date.month - start_date.month + 1


def validate_amount(total_amount: Any) -> Decimal:
    """
    Coerce and validate a schedule total.

    Raises:
        InvalidAmountError: not numeric, not positive, finer than a cent,
            or larger than a money column can store.
    """
    try:
        total = to_decimal(total_amount)
    except ValueError as exc:
        raise InvalidAmountError(total_amount, str(exc)) from exc
    if total <= 0:
        raise InvalidAmountError(total_amount, "must be greater than zero")
    if total > MAX_MONEY:
        raise InvalidAmountError(total_amount, f"must not exceed {MAX_MONEY}")
    if not is_whole_cents(total):
        raise InvalidAmountError(total_amount, "must not have more than 2 decimal places")
    return round_money(total)


def _as_date(value: Any, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"{name} must be a date, got {type(value).__name__}")


def generate_schedule(
    start_date: date,
    end_date: date,
    total_amount: Decimal | int | str,
) -> tuple[SchedulePeriod, ...]:
    """
    Build the ordered recognition plan for a schedule.

    Example (181 days, 6000.00):
        2025-02-06..2025-02-28  23 days  762.43
        ...
        2025-08-01..2025-08-05   5 days  remainder, posted 2025-08-05
    """
    start = _as_date(start_date, "start_date")
    end = _as_date(end_date, "end_date")
    total = validate_amount(total_amount)
    if start > end:
        raise InvalidRangeError(start, end)

    total_days = (end - start).days + 1
    periods: list[SchedulePeriod] = []
    allocated = ZERO
    cursor = start
    index = 0

    while cursor <= end:
        last_of_month = month_end(cursor)
        period_end = min(last_of_month, end)
        days = (period_end - cursor).days + 1
        is_final = period_end == end

        if is_final:
            amount = total - allocated
            posting_date = end
        else:
            amount = round_money(total * days / total_days)
            posting_date = last_of_month

        allocated += amount
        periods.append(
            SchedulePeriod(
                index=index,
                period_start=cursor,
                period_end=period_end,
                posting_date=posting_date,
                days=days,
                amount=amount,
                cumulative=allocated,
                remaining=total - allocated,
            )
        )
        cursor = period_end + timedelta(days=1)
        index += 1

    return tuple(periods)
