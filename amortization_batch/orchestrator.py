"""
PostingOrchestrator -- the daily posting run.

Contract:
    run() posts every due, unposted journal entry once and returns a
    PostingRunResult.  One invocation per scheduled run.

Flow:
    1. Acquire the advisory run lock (StorageError if the database is
       unreachable, RunLockHeldError if another run holds it).
    2. Load every schedule and entry as DTOs in one short transaction;
       schedules are indexed by id and entries never reach back into the
       session.
    3. Pin ``as_of`` once via business_date(clock, business_tz) and ask
       select_due_entries() for the due set.
    4. Post each due entry independently, in order.

Invariants enforced:
    - Every attempt (first try and each retry) re-reads the entry's posted
      flag from storage before calling the ledger.
    - posted, external_journal_id and posted_at are written by one
      conditional UPDATE, committed before the next entry starts.
    - An entry whose row is gone when it is re-read fails as ENTRY_NOT_FOUND
      without a ledger call.  If the UPDATE finds no unposted row and the
      stored row does not carry this journal id, the item fails as
      UNRECORDED_JOURNAL and the journal id is logged at error level.
    - A tenant whose credential fails (CredentialError, DecryptionError) is
      skipped for the rest of the run; other tenants carry on.
    - RemoteRejectionError, InvalidScheduleError, exhausted transient
      failures and unexpected exceptions fail only their own entry.
    - StorageError aborts the run: parked token grants are flushed on a
      best-effort basis, the partial summary is logged and the error
      propagates.  The run lock is always released.

Non-goals:
    - Parallel posting across tenants.  Runs are sequential.
"""

from __future__ import annotations

import time
from datetime import timedelta, timezone, tzinfo
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from amortization_kernel.db.engine import transactional
from amortization_kernel.domain.clock import Clock, SystemClock, business_date
from amortization_kernel.domain.due_selector import select_due_entries
from amortization_kernel.domain.dtos import JournalEntryRecord, ScheduleRecord
from amortization_kernel.exceptions import (
    AmortizationError,
    CredentialError,
    DecryptionError,
    StorageError,
    TransientNetworkError,
)
from amortization_kernel.logging_config import LogContext, get_logger
from amortization_kernel.repositories.schedules import (
    JournalEntryRepository,
    ScheduleRepository,
)
from amortization_kernel.services.credential_vault import CredentialVault
from amortization_kernel.services.ledger_client import LedgerPostingClient
from amortization_kernel.services.retry import RetryPolicy
from amortization_kernel.services.run_lock import RunLock

from amortization_batch.domain.types import (
    PostingItemResult,
    PostingItemStatus,
    PostingRunResult,
    derive_run_status,
)

logger = get_logger("batch.orchestrator")

RUN_LOCK_NAME = "daily_posting"


class PostingOrchestrator:
    """Composes the due selector, the ledger client and the vault for one run."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ledger_client: LedgerPostingClient,
        vault: CredentialVault,
        clock: Clock | None = None,
        business_tz: tzinfo = timezone.utc,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        lock_ttl: timedelta = timedelta(hours=1),
    ):
        self._session_factory = session_factory
        self._ledger = ledger_client
        self._vault = vault
        self._clock = clock or SystemClock()
        self._business_tz = business_tz
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._lock_ttl = lock_ttl

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, run_id: str | None = None) -> PostingRunResult:
        run_id = run_id or str(uuid4())
        start = time.monotonic()
        started_at = self._clock.now_utc()
        as_of = business_date(self._clock, self._business_tz)

        with LogContext.bind(run_id=run_id):
            lock = RunLock(
                self._session_factory, RUN_LOCK_NAME, holder=run_id,
                ttl=self._lock_ttl, clock=self._clock,
            )
            lock.acquire()
            try:
                schedules, entries = self._load()
                due = select_due_entries(as_of, entries)
                logger.info(
                    "posting_run_started",
                    extra={
                        "as_of": as_of,
                        "schedule_count": len(schedules),
                        "entry_count": len(entries),
                        "due_count": len(due),
                    },
                )

                results: list[PostingItemResult] = []
                blocked: dict[str, str] = {}
                try:
                    for entry in due:
                        results.append(self._process_entry(entry, schedules, blocked))
                except StorageError:
                    self._flush_pending_grants()
                    logger.error(
                        "posting_run_aborted",
                        extra={
                            "as_of": as_of,
                            "due_count": len(due),
                            "processed": len(results),
                        },
                        exc_info=True,
                    )
                    raise

                result = self._build_result(
                    run_id, as_of, due, results, blocked, started_at, start,
                )
                logger.info("posting_run_completed", extra=result.summary())
                return result
            finally:
                lock.release()

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def _load(self) -> tuple[dict[UUID, ScheduleRecord], list[JournalEntryRecord]]:
        try:
            with transactional(self._session_factory) as session:
                schedules = ScheduleRepository(session).list_all()
                entries = JournalEntryRepository(session).list_all()
        except SQLAlchemyError as exc:
            raise StorageError("load_schedules", type(exc).__name__) from exc
        return {s.id: s for s in schedules}, entries

    def _is_posted(self, entry_id: UUID) -> bool | None:
        try:
            with transactional(self._session_factory) as session:
                return JournalEntryRepository(session).is_posted(entry_id)
        except SQLAlchemyError as exc:
            raise StorageError("check_posted", type(exc).__name__) from exc

    def _reload(self, entry_id: UUID) -> JournalEntryRecord | None:
        try:
            with transactional(self._session_factory) as session:
                return JournalEntryRepository(session).get(entry_id)
        except SQLAlchemyError as exc:
            raise StorageError("reload_entry", type(exc).__name__) from exc

    def _mark_posted(self, entry_id: UUID, external_journal_id: str) -> bool:
        try:
            with transactional(self._session_factory) as session:
                return JournalEntryRepository(session).mark_posted(
                    entry_id, external_journal_id, self._clock.now_utc(),
                )
        except SQLAlchemyError as exc:
            raise StorageError("mark_posted", type(exc).__name__) from exc

    def _flush_pending_grants(self) -> None:
        try:
            flushed = self._vault.flush_pending_grants()
        except StorageError:
            logger.critical("pending_token_grants_unflushed", exc_info=True)
            return
        if flushed:
            logger.info("pending_token_grants_flushed", extra={"count": flushed})

    # -------------------------------------------------------------------------
    # Per-entry processing
    # -------------------------------------------------------------------------

    def _process_entry(
        self,
        entry: JournalEntryRecord,
        schedules: dict[UUID, ScheduleRecord],
        blocked: dict[str, str],
    ) -> PostingItemResult:
        item_start = time.monotonic()
        schedule = schedules.get(entry.schedule_id)
        tenant_id = schedule.tenant_id if schedule is not None else None

        def result(status: PostingItemStatus, attempts: int, **kwargs) -> PostingItemResult:
            return PostingItemResult(
                entry_id=entry.id,
                schedule_id=entry.schedule_id,
                tenant_id=tenant_id,
                period_date=entry.period_date,
                status=status,
                attempts=attempts,
                duration_ms=int((time.monotonic() - item_start) * 1000),
                **kwargs,
            )

        with LogContext.bind(
            entry_id=str(entry.id),
            schedule_id=str(entry.schedule_id),
            tenant_id=tenant_id,
        ):
            if schedule is None:
                logger.error("journal_entry_orphaned")
                return result(
                    PostingItemStatus.FAILED, 0,
                    error_code="ORPHAN_ENTRY",
                    error_message=f"schedule {entry.schedule_id} not found",
                )

            if schedule.tenant_id in blocked:
                logger.info(
                    "journal_entry_skipped_tenant_blocked",
                    extra={"reason": blocked[schedule.tenant_id]},
                )
                return result(
                    PostingItemStatus.SKIPPED, 0,
                    error_code=CredentialError.code,
                    error_message=blocked[schedule.tenant_id],
                )

            attempt = 0
            while True:
                attempt += 1
                posted = self._is_posted(entry.id)
                if posted is None:
                    logger.warning("journal_entry_vanished", extra={"attempt": attempt})
                    return result(
                        PostingItemStatus.FAILED, attempt - 1,
                        error_code="ENTRY_NOT_FOUND",
                        error_message=f"journal entry {entry.id} no longer exists",
                    )
                if posted:
                    logger.info("journal_entry_already_posted", extra={"attempt": attempt})
                    return result(PostingItemStatus.ALREADY_POSTED, attempt - 1)

                try:
                    outcome = self._ledger.post_entry(schedule, entry)
                except StorageError:
                    raise
                except TransientNetworkError as exc:
                    if self._retry.has_attempts_left(attempt):
                        delay = self._retry.delay_for(attempt, exc.retry_after)
                        logger.warning(
                            "journal_post_retrying",
                            extra={
                                "attempt": attempt,
                                "delay_seconds": delay,
                                "status_code": exc.status_code,
                                "error": exc.message,
                            },
                        )
                        self._sleep(delay)
                        continue
                    logger.error(
                        "journal_post_retries_exhausted",
                        extra={"attempts": attempt, "status_code": exc.status_code},
                    )
                    return result(
                        PostingItemStatus.FAILED, attempt,
                        error_code=exc.code, error_message=exc.message,
                    )
                except CredentialError as exc:
                    blocked[schedule.tenant_id] = exc.reason
                    logger.error(
                        "tenant_requires_reconnection",
                        extra={"reason": exc.reason},
                    )
                    return result(
                        PostingItemStatus.FAILED, attempt,
                        error_code=exc.code, error_message=exc.message,
                    )
                except DecryptionError as exc:
                    blocked[schedule.tenant_id] = DecryptionError.code
                    logger.critical("tenant_credential_undecryptable", exc_info=True)
                    return result(
                        PostingItemStatus.FAILED, attempt,
                        error_code=exc.code, error_message=exc.message,
                    )
                except AmortizationError as exc:
                    # RemoteRejectionError, InvalidScheduleError, UnbalancedJournalError
                    logger.error(
                        "journal_post_failed",
                        extra={"error_code": exc.code, "error": exc.message},
                    )
                    return result(
                        PostingItemStatus.FAILED, attempt,
                        error_code=exc.code, error_message=exc.message,
                    )
                except SQLAlchemyError as exc:
                    raise StorageError("post_entry", type(exc).__name__) from exc
                except Exception as exc:
                    logger.error("journal_post_unhandled_exception", exc_info=True)
                    return result(
                        PostingItemStatus.FAILED, attempt,
                        error_code="UNHANDLED_EXCEPTION", error_message=str(exc),
                    )

                if not outcome.remote_call_made:
                    return result(
                        PostingItemStatus.ALREADY_POSTED, attempt,
                        external_journal_id=outcome.external_journal_id,
                    )

                if not self._mark_posted(entry.id, outcome.external_journal_id):
                    current = self._reload(entry.id)
                    if (
                        current is None
                        or not current.posted
                        or current.external_journal_id != outcome.external_journal_id
                    ):
                        logger.error(
                            "journal_posted_without_entry",
                            extra={
                                "external_journal_id": outcome.external_journal_id,
                                "entry_exists": current is not None,
                                "recorded_journal_id": (
                                    current.external_journal_id if current else None
                                ),
                            },
                        )
                        return result(
                            PostingItemStatus.FAILED, attempt,
                            external_journal_id=outcome.external_journal_id,
                            error_code="UNRECORDED_JOURNAL",
                            error_message=(
                                f"ledger journal {outcome.external_journal_id} "
                                "has no matching posted entry"
                            ),
                        )
                    logger.warning(
                        "journal_entry_marked_concurrently",
                        extra={"external_journal_id": outcome.external_journal_id},
                    )
                logger.info(
                    "journal_entry_posted",
                    extra={
                        "external_journal_id": outcome.external_journal_id,
                        "period_date": entry.period_date,
                        "amount": entry.amount,
                        "attempts": attempt,
                    },
                )
                return result(
                    PostingItemStatus.POSTED, attempt,
                    external_journal_id=outcome.external_journal_id,
                )

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def _build_result(
        self,
        run_id: str,
        as_of,
        due: list[JournalEntryRecord],
        results: list[PostingItemResult],
        blocked: dict[str, str],
        started_at,
        start: float,
    ) -> PostingRunResult:
        counts = {status: 0 for status in PostingItemStatus}
        for item in results:
            counts[item.status] += 1
        succeeded = counts[PostingItemStatus.POSTED] + counts[PostingItemStatus.ALREADY_POSTED]
        unsuccessful = counts[PostingItemStatus.FAILED] + counts[PostingItemStatus.SKIPPED]
        return PostingRunResult(
            run_id=run_id,
            as_of=as_of,
            status=derive_run_status(len(due), succeeded, unsuccessful),
            total_due=len(due),
            posted=counts[PostingItemStatus.POSTED],
            already_posted=counts[PostingItemStatus.ALREADY_POSTED],
            failed=counts[PostingItemStatus.FAILED],
            skipped=counts[PostingItemStatus.SKIPPED],
            disconnected_tenants=tuple(sorted(blocked)),
            item_results=tuple(results),
            started_at=started_at,
            completed_at=self._clock.now_utc(),
            duration_ms=int((time.monotonic() - start) * 1000),
        )
