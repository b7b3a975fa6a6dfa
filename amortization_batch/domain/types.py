"""
amortization_batch.domain.types -- Pure frozen dataclasses for batch runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class PostingRunStatus(str, Enum):
    """Run-level outcome."""

    NOTHING_DUE = "nothing_due"
    COMPLETED = "completed"  # every due entry is now posted
    PARTIALLY_COMPLETED = "partially_completed"  # some posted, some not
    FAILED = "failed"  # nothing posted, something failed


class PostingItemStatus(str, Enum):
    """Per-entry outcome within a run."""

    POSTED = "posted"
    ALREADY_POSTED = "already_posted"  # found posted on re-check; no remote call
    FAILED = "failed"
    SKIPPED = "skipped"  # tenant blocked earlier in the run


class RefreshItemStatus(str, Enum):
    REFRESHED = "refreshed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


# =============================================================================
# Posting run DTOs
# =============================================================================


@dataclass(frozen=True)
class PostingItemResult:
    entry_id: UUID
    schedule_id: UUID
    tenant_id: str | None
    period_date: date | None
    status: PostingItemStatus
    external_journal_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class PostingRunResult:
    """Summary of one orchestrator run."""

    run_id: str
    as_of: date
    status: PostingRunStatus
    total_due: int
    posted: int
    already_posted: int
    failed: int
    skipped: int
    disconnected_tenants: tuple[str, ...] = ()
    item_results: tuple[PostingItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "as_of": self.as_of.isoformat(),
            "status": self.status.value,
            "total_due": self.total_due,
            "posted": self.posted,
            "already_posted": self.already_posted,
            "failed": self.failed,
            "skipped": self.skipped,
            "disconnected_tenants": list(self.disconnected_tenants),
            "duration_ms": self.duration_ms,
        }


def derive_run_status(total_due: int, succeeded: int, unsuccessful: int) -> PostingRunStatus:
    if total_due == 0:
        return PostingRunStatus.NOTHING_DUE
    if unsuccessful == 0:
        return PostingRunStatus.COMPLETED
    if succeeded == 0:
        return PostingRunStatus.FAILED
    return PostingRunStatus.PARTIALLY_COMPLETED


# =============================================================================
# Token refresh sweep DTOs
# =============================================================================


@dataclass(frozen=True)
class TokenRefreshItem:
    tenant_id: str
    status: RefreshItemStatus
    expires_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class TokenRefreshResult:
    run_id: str
    refreshed: int
    disconnected: int
    failed: int
    items: tuple[TokenRefreshItem, ...] = field(default_factory=tuple)
