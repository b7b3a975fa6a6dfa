"""
Tests for amortization_batch.orchestrator.PostingOrchestrator.

End to end against in-memory SQLite and the fake ledger: due selection,
at-most-once posting, per-tenant isolation, retries and run aborts.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from amortization_kernel.db.engine import transactional
from amortization_kernel.domain.dtos import JournalEntryRecord
from amortization_kernel.exceptions import (
    DecryptionError,
    RunLockHeldError,
    StorageError,
)
from amortization_kernel.models.run_lock import RunLockModel
from amortization_kernel.repositories.schedules import JournalEntryRepository
from amortization_kernel.services.retry import RetryPolicy
from amortization_kernel.services.run_lock import RunLock

from amortization_batch.domain.types import PostingItemStatus, PostingRunStatus
from amortization_batch.orchestrator import RUN_LOCK_NAME, PostingOrchestrator

SCHEDULE_A = UUID("00000000-0000-0000-0000-0000000000a1")
SCHEDULE_B = UUID("00000000-0000-0000-0000-0000000000b1")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def build_orchestrator(session_factory, ledger_client, vault, clock, sleeps):
    def _build(**kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=4.0))
        kwargs.setdefault("sleep", sleeps.append)
        return PostingOrchestrator(session_factory, ledger_client, vault, **kwargs)

    return _build


@pytest.fixture
def orchestrator(build_orchestrator):
    return build_orchestrator()


@pytest.fixture
def seeded(schedule_service, make_schedule, connect_tenant):
    """tenant-a and tenant-b, one schedule each, three entries due on 2026-02-01."""
    connect_tenant("tenant-a")
    connect_tenant("tenant-b")
    entries_a = schedule_service.create_schedule(make_schedule("tenant-a", id=SCHEDULE_A))
    entries_b = schedule_service.create_schedule(make_schedule("tenant-b", id=SCHEDULE_B))
    return entries_a, entries_b


def _entries(session_factory):
    with transactional(session_factory) as session:
        return JournalEntryRepository(session).list_all()


def _statuses(result):
    return [(str(item.schedule_id)[-2:], item.period_date.isoformat(), item.status) for item in result.item_results]


# =============================================================================
# Happy path
# =============================================================================


class TestPosting:

    def test_posts_every_due_entry(self, orchestrator, seeded, fake_ledger, session_factory):
        result = orchestrator.run(run_id="run-1")

        assert result.status == PostingRunStatus.COMPLETED
        assert result.as_of.isoformat() == "2026-02-01"
        assert (result.total_due, result.posted, result.failed) == (6, 6, 0)
        assert fake_ledger.journal_calls == 6

        stored = _entries(session_factory)
        posted = [e for e in stored if e.posted]
        assert len(posted) == 6
        assert all(e.external_journal_id and e.posted_at for e in posted)
        assert {e.period_date.isoformat() for e in posted} == {"2025-11-30", "2025-12-31", "2026-01-31"}

    def test_entries_processed_in_date_then_schedule_order(self, orchestrator, seeded):
        result = orchestrator.run()
        assert [(s, d) for s, d, _ in _statuses(result)] == [
            ("a1", "2025-11-30"),
            ("b1", "2025-11-30"),
            ("a1", "2025-12-31"),
            ("b1", "2025-12-31"),
            ("a1", "2026-01-31"),
            ("b1", "2026-01-31"),
        ]

    def test_second_run_posts_nothing(self, orchestrator, seeded, fake_ledger):
        orchestrator.run()
        second = orchestrator.run()

        assert second.status == PostingRunStatus.NOTHING_DUE
        assert fake_ledger.journal_calls == 6
        assert len(fake_ledger.journals_by_key) == 6

    def test_nothing_due(self, orchestrator, fake_ledger):
        result = orchestrator.run()
        assert result.status == PostingRunStatus.NOTHING_DUE
        assert result.total_due == 0
        assert fake_ledger.journal_calls == 0

    def test_later_run_picks_up_next_month(self, orchestrator, seeded, clock, fake_ledger):
        orchestrator.run()
        clock.set_time(datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc))

        result = orchestrator.run()

        assert result.posted == 2
        assert {item.period_date.isoformat() for item in result.item_results} == {"2026-02-28"}

    def test_posted_logs_carry_run_context(self, orchestrator, seeded, captured_logs):
        orchestrator.run(run_id="run-ctx")
        posted = [r for r in captured_logs() if r["message"] == "journal_entry_posted"]
        assert len(posted) == 6
        assert all(r["run_id"] == "run-ctx" and r["entry_id"] and r["tenant_id"] for r in posted)
        completed = [r for r in captured_logs() if r["message"] == "posting_run_completed"]
        assert completed[0]["posted"] == 6

    def test_lock_released_after_run(self, orchestrator, seeded, session_factory):
        orchestrator.run()
        with transactional(session_factory) as session:
            assert session.execute(select(RunLockModel)).scalars().all() == []


class TestBusinessDate:
    INSTANT = datetime(2026, 1, 30, 20, 0, tzinfo=timezone.utc)

    def test_utc(self, build_orchestrator, seeded, clock):
        clock.set_time(self.INSTANT)
        result = build_orchestrator().run()
        assert result.as_of.isoformat() == "2026-01-30"
        assert result.total_due == 4

    def test_ahead_of_utc(self, build_orchestrator, seeded, clock):
        clock.set_time(self.INSTANT)
        result = build_orchestrator(business_tz=ZoneInfo("Pacific/Auckland")).run()
        assert result.as_of.isoformat() == "2026-01-31"
        assert result.total_due == 6


# =============================================================================
# Failure isolation
# =============================================================================


class TestIsolation:

    def test_rejection_fails_only_its_entry(self, orchestrator, seeded, fake_ledger, session_factory):
        fake_ledger.journal_responses.append(
            httpx.Response(
                400,
                json={"Elements": [{"ValidationErrors": [{"Message": "Account code '400' is archived"}]}]},
            )
        )

        result = orchestrator.run()

        assert result.status == PostingRunStatus.PARTIALLY_COMPLETED
        assert (result.posted, result.failed, result.skipped) == (5, 1, 0)
        failed = result.item_results[0]
        assert failed.status == PostingItemStatus.FAILED
        assert failed.error_code == "REMOTE_REJECTION"
        assert failed.schedule_id == SCHEDULE_A
        assert result.disconnected_tenants == ()
        assert not [e for e in _entries(session_factory) if e.id == failed.entry_id][0].posted

    def test_credential_failure_skips_rest_of_tenant(self, orchestrator, seeded, fake_ledger, vault, token_cache):
        token_cache.invalidate("tenant-a")
        vault.disconnect("tenant-a", "user_revoked")

        result = orchestrator.run()

        statuses = _statuses(result)
        assert [s for t, _, s in statuses if t == "a1"] == [
            PostingItemStatus.FAILED,
            PostingItemStatus.SKIPPED,
            PostingItemStatus.SKIPPED,
        ]
        assert all(s == PostingItemStatus.POSTED for t, _, s in statuses if t == "b1")
        assert result.disconnected_tenants == ("tenant-a",)
        assert result.status == PostingRunStatus.PARTIALLY_COMPLETED
        assert fake_ledger.journal_calls == 3

    def test_refused_refresh_disconnects_and_skips(
        self, orchestrator, schedule_service, make_schedule, connect_tenant, fake_ledger, vault
    ):
        connect_tenant("tenant-a", expires_in=timedelta(minutes=-5))
        fake_ledger.valid_refresh_tokens.clear()
        schedule_service.create_schedule(make_schedule("tenant-a"))

        result = orchestrator.run()

        assert (result.failed, result.skipped, result.posted) == (1, 2, 0)
        assert result.status == PostingRunStatus.FAILED
        assert not vault.get_credential("tenant-a").is_connected
        assert fake_ledger.refresh_calls == 1

    def test_undecryptable_credential_blocks_without_disconnecting(
        self, orchestrator, seeded, vault, monkeypatch
    ):
        original = vault.get_valid_access_token

        def _token(tenant_id):
            if tenant_id == "tenant-a":
                raise DecryptionError()
            return original(tenant_id)

        monkeypatch.setattr(vault, "get_valid_access_token", _token)

        result = orchestrator.run()

        a_items = [i for i in result.item_results if i.tenant_id == "tenant-a"]
        assert [i.status for i in a_items] == [
            PostingItemStatus.FAILED,
            PostingItemStatus.SKIPPED,
            PostingItemStatus.SKIPPED,
        ]
        assert a_items[0].error_code == "DECRYPTION_FAILED"
        assert vault.get_credential("tenant-a").is_connected
        assert result.posted == 3

    def test_orphan_entry_fails_alone(self, orchestrator, seeded, session_factory):
        orphan = JournalEntryRecord(
            id=uuid4(),
            schedule_id=uuid4(),
            period_date=datetime(2025, 10, 31).date(),
            amount=seeded[0][0].amount,
        )
        with transactional(session_factory) as session:
            JournalEntryRepository(session).add_many([orphan])

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.entry_id == orphan.id
        assert first.error_code == "ORPHAN_ENTRY"
        assert result.posted == 6

    def test_unexpected_exception_fails_entry(self, orchestrator, seeded, ledger_client, monkeypatch):
        def _explode(schedule, entry):
            raise RuntimeError("bug in payload builder")

        monkeypatch.setattr(ledger_client, "post_entry", _explode)

        result = orchestrator.run()

        assert result.status == PostingRunStatus.FAILED
        assert {i.error_code for i in result.item_results} == {"UNHANDLED_EXCEPTION"}


# =============================================================================
# Retries
# =============================================================================


class TestRetries:

    def test_transient_then_success(self, orchestrator, seeded, fake_ledger, sleeps):
        fake_ledger.journal_responses.extend([
            httpx.Response(503),
            httpx.Response(429, headers={"Retry-After": "2"}),
        ])

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.status == PostingItemStatus.POSTED
        assert first.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert result.posted == 6

    def test_rejected_access_token_triggers_refresh(self, orchestrator, seeded, fake_ledger, sleeps):
        fake_ledger.journal_responses.append(httpx.Response(401))

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.status == PostingItemStatus.POSTED
        assert first.attempts == 2
        assert fake_ledger.refresh_calls == 1
        auth = [headers["Authorization"] for headers, _ in fake_ledger.journal_requests[:2]]
        assert auth == ["Bearer seed-access-tenant-a", "Bearer access-1"]
        assert sleeps == [1.0]
        assert result.posted == 6

    def test_retries_reuse_idempotency_key(self, orchestrator, seeded, fake_ledger):
        fake_ledger.journal_responses.append(httpx.ConnectError("reset"))
        orchestrator.run()
        keys = [headers["Idempotency-Key"] for headers, _ in fake_ledger.journal_requests[:2]]
        assert keys[0] == keys[1]

    def test_retries_exhausted(self, orchestrator, seeded, fake_ledger, sleeps):
        fake_ledger.journal_responses.extend(httpx.Response(503) for _ in range(3))

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.status == PostingItemStatus.FAILED
        assert first.error_code == "TRANSIENT_NETWORK"
        assert first.attempts == 3
        assert sleeps == [1.0, 2.0]
        assert result.status == PostingRunStatus.PARTIALLY_COMPLETED
        assert result.posted == 5

    def test_posted_flag_rechecked_before_retry(
        self, build_orchestrator, seeded, fake_ledger, session_factory, clock
    ):
        first_entry = seeded[0][0]

        def _sleep_while_another_process_posts(delay):
            with transactional(session_factory) as session:
                JournalEntryRepository(session).mark_posted(first_entry.id, "mj-elsewhere", clock.now_utc())

        fake_ledger.journal_responses.append(httpx.Response(502))
        orchestrator = build_orchestrator(sleep=_sleep_while_another_process_posts)

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.entry_id == first_entry.id
        assert first.status == PostingItemStatus.ALREADY_POSTED
        assert result.status == PostingRunStatus.COMPLETED
        # one failed attempt for the first entry, then one call per remaining entry
        assert fake_ledger.journal_calls == 6

# =============================================================================
# Entries edited during a run
# =============================================================================


class TestConcurrentEdits:

    def test_regenerated_entries_are_never_reported_posted(
        self, orchestrator, seeded, ledger_client, schedule_service, fake_ledger,
        session_factory, monkeypatch, captured_logs,
    ):
        real_post = ledger_client.post_entry
        edits = []

        def _post_after_edit(schedule, entry):
            if not edits:
                edits.append(schedule_service.regenerate_entries(SCHEDULE_A, total_amount=Decimal("1300.00")))
            return real_post(schedule, entry)

        monkeypatch.setattr(ledger_client, "post_entry", _post_after_edit)

        result = orchestrator.run()

        a_items = [i for i in result.item_results if i.schedule_id == SCHEDULE_A]
        assert [i.error_code for i in a_items] == ["UNRECORDED_JOURNAL", "ENTRY_NOT_FOUND", "ENTRY_NOT_FOUND"]
        assert all(i.status == PostingItemStatus.FAILED for i in a_items)
        assert a_items[0].external_journal_id == "mj-0001"
        assert a_items[1].attempts == 0
        assert result.posted == 3
        assert result.status == PostingRunStatus.PARTIALLY_COMPLETED
        assert fake_ledger.journal_calls == 4

        regenerated = [e for e in _entries(session_factory) if e.schedule_id == SCHEDULE_A]
        assert regenerated and not any(e.posted for e in regenerated)
        unrecorded = [r for r in captured_logs() if r["message"] == "journal_posted_without_entry"]
        assert unrecorded[0]["external_journal_id"] == "mj-0001"
        assert unrecorded[0]["level"] == "ERROR"

    def test_same_journal_recorded_elsewhere_counts_as_posted(
        self, orchestrator, seeded, ledger_client, session_factory, clock, monkeypatch
    ):
        real_post = ledger_client.post_entry

        def _post_and_record_elsewhere(schedule, entry):
            outcome = real_post(schedule, entry)
            with transactional(session_factory) as session:
                JournalEntryRepository(session).mark_posted(
                    entry.id, outcome.external_journal_id, clock.now_utc(),
                )
            return outcome

        monkeypatch.setattr(ledger_client, "post_entry", _post_and_record_elsewhere)

        result = orchestrator.run()

        assert result.status == PostingRunStatus.COMPLETED
        assert result.posted == 6

    def test_different_journal_recorded_elsewhere_fails(
        self, orchestrator, seeded, ledger_client, session_factory, clock, monkeypatch
    ):
        real_post = ledger_client.post_entry
        first_entry = seeded[0][0]

        def _post_while_other_journal_recorded(schedule, entry):
            outcome = real_post(schedule, entry)
            if entry.id == first_entry.id:
                with transactional(session_factory) as session:
                    JournalEntryRepository(session).mark_posted(entry.id, "mj-elsewhere", clock.now_utc())
            return outcome

        monkeypatch.setattr(ledger_client, "post_entry", _post_while_other_journal_recorded)

        result = orchestrator.run()

        first = result.item_results[0]
        assert first.status == PostingItemStatus.FAILED
        assert first.error_code == "UNRECORDED_JOURNAL"
        assert result.posted == 5


# =============================================================================
# Aborts and locking
# =============================================================================


class TestAbort:

    def test_storage_failure_aborts_run(
        self, orchestrator, seeded, fake_ledger, session_factory, monkeypatch, captured_logs
    ):
        def _boom(self, *args, **kwargs):
            raise OperationalError("UPDATE journal_entries", {}, Exception("disk I/O error"))

        monkeypatch.setattr(JournalEntryRepository, "mark_posted", _boom)

        with pytest.raises(StorageError) as exc_info:
            orchestrator.run()

        assert exc_info.value.operation == "mark_posted"
        assert fake_ledger.journal_calls == 1
        assert any(r["message"] == "posting_run_aborted" for r in captured_logs())
        with transactional(session_factory) as session:
            assert session.execute(select(RunLockModel)).scalars().all() == []

    def test_rerun_after_abort_resubmits_same_key(self, orchestrator, seeded, fake_ledger, monkeypatch):
        def _boom(self, *args, **kwargs):
            raise OperationalError("UPDATE journal_entries", {}, Exception("disk I/O error"))

        monkeypatch.setattr(JournalEntryRepository, "mark_posted", _boom)
        with pytest.raises(StorageError):
            orchestrator.run()
        monkeypatch.undo()

        result = orchestrator.run()

        assert result.posted == 6
        assert len(fake_ledger.journals_by_key) == 6
        assert result.item_results[0].external_journal_id == "mj-0001"

    def test_lock_held_by_live_run(self, orchestrator, seeded, session_factory, clock, fake_ledger):
        other = RunLock(session_factory, RUN_LOCK_NAME, holder="run-other", clock=clock)
        other.acquire()

        with pytest.raises(RunLockHeldError):
            orchestrator.run()

        assert fake_ledger.journal_calls == 0
        other.release()
