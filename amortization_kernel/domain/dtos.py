"""
Domain DTOs -- immutable records passed between the kernel layers.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ORM models convert to and from these
    via ``to_dto()`` / ``from_dto()``; services and the batch only ever hold
    DTOs once a session is closed, so nothing lazy-loads behind their back.

Invariants enforced:
    - All DTOs are frozen dataclasses.
    - Amounts are Decimal; a JournalLine amount is signed (debit positive,
      credit negative).
    - Token material on TokenGrant is excluded from ``repr``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ScheduleType(str, Enum):
    """Which side of the balance sheet the deferral sits on."""

    PREPAID = "PREPAID"  # prepaid asset recognised as expense
    UNEARNED = "UNEARNED"  # unearned liability recognised as revenue


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


@dataclass(frozen=True)
class ScheduleRecord:
    """A plan to recognise ``total_amount`` over [start_date, end_date]."""

    id: UUID
    tenant_id: str
    schedule_type: ScheduleType
    start_date: date
    end_date: date
    total_amount: Decimal
    deferral_acct_code: str
    expense_acct_code: str | None = None  # PREPAID
    revenue_acct_code: str | None = None  # UNEARNED
    description: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class JournalEntryRecord:
    """One period's recognition amount belonging to exactly one schedule."""

    id: UUID
    schedule_id: UUID
    period_date: date | None
    amount: Decimal
    posted: bool = False
    external_journal_id: str | None = None
    posted_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CredentialRecord:
    """A tenant's stored ledger connection (tokens still encrypted)."""

    tenant_id: str
    encrypted_access_token: str | None = field(repr=False)
    encrypted_refresh_token: str | None = field(repr=False)
    expires_at: datetime | None
    connection_status: ConnectionStatus
    disconnect_reason: str | None = None
    last_refreshed_at: datetime | None = None
    tenant_name: str | None = None
    scopes: str | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED


@dataclass(frozen=True)
class SchedulePeriod:
    """One row of a generated recognition plan."""

    index: int
    period_start: date
    period_end: date
    posting_date: date
    days: int
    amount: Decimal
    cumulative: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class JournalLine:
    """Signed journal line: positive debits, negative credits."""

    account_code: str
    description: str
    amount: Decimal


@dataclass(frozen=True)
class TokenGrant:
    """Result of an OAuth token exchange.

    ``refresh_token`` is None when the server did not rotate it.
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(repr=False)
    expires_at: datetime
    scopes: str | None = None


@dataclass(frozen=True)
class PostingOutcome:
    """What LedgerPostingClient.post_entry did for one entry."""

    entry_id: UUID
    external_journal_id: str
    remote_call_made: bool
