"""
Pytest fixtures for the amortization test suite.

Provides:
- In-memory SQLite storage (StaticPool, so every session sees one database)
- A DeterministicClock pinned to 2026-02-01 12:00 UTC
- FakeLedgerServer: token endpoint + Manual Journals API on httpx.MockTransport
- Fully wired vault / ledger client / schedule service
- Structured log capture
"""

import json
import logging
from collections import deque
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from urllib.parse import parse_qsl
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import amortization_kernel.models  # noqa: F401
from amortization_kernel.db.base import Base
from amortization_kernel.domain.clock import DeterministicClock
from amortization_kernel.domain.dtos import ScheduleRecord, ScheduleType, TokenGrant
from amortization_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from amortization_kernel.services.credential_vault import AccessTokenCache, CredentialVault
from amortization_kernel.services.encryption_service import EncryptionService
from amortization_kernel.services.ledger_client import LedgerPostingClient
from amortization_kernel.services.oauth_client import OAuthClient
from amortization_kernel.services.schedule_service import ScheduleService

FIXED_NOW = datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc)

TOKEN_URL = "https://identity.ledger.test/connect/token"
API_BASE_URL = "https://api.ledger.test/api.xro/2.0"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture amortization_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            ...
            assert any(r["message"] == "journal_entry_posted" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("amortization_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=FIXED_NOW)


# =============================================================================
# Fake ledger
# =============================================================================


class FakeLedgerServer:
    """
    Token endpoint and Manual Journals API behind httpx.MockTransport.

    - Refresh tokens are single-use: a spent or unknown refresh token gets
      ``400 invalid_grant``, as the real server does.
    - Journals are de-duplicated on Idempotency-Key.
    - ``token_responses`` / ``journal_responses`` queue canned
      httpx.Response objects or exceptions that take precedence.
    """

    def __init__(self):
        self.token_requests: list[dict] = []
        self.journal_requests: list[tuple[httpx.Headers, dict]] = []
        self.token_responses: deque = deque()
        self.journal_responses: deque = deque()
        self.valid_refresh_tokens: set[str] = set()
        self.journals_by_key: dict[str, str] = {}
        self.rotate_refresh_tokens = True
        self._issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/connect/token"):
            return self._token(request)
        if request.url.path.endswith("/ManualJournals"):
            return self._journal(request)
        return httpx.Response(404, json={"Message": "not found"})

    @property
    def journal_calls(self) -> int:
        return len(self.journal_requests)

    @property
    def refresh_calls(self) -> int:
        return sum(1 for f in self.token_requests if f.get("grant_type") == "refresh_token")

    def _next(self, queue: deque):
        item = queue.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)
        if self.token_responses:
            return self._next(self.token_responses)

        refresh_token = None
        if form.get("grant_type") == "refresh_token":
            presented = form.get("refresh_token")
            if presented not in self.valid_refresh_tokens:
                return httpx.Response(
                    400, json={"error": "invalid_grant", "error_description": "token spent"},
                )
            if self.rotate_refresh_tokens:
                self.valid_refresh_tokens.discard(presented)
            else:
                refresh_token = presented

        self._issued += 1
        body = {
            "access_token": f"access-{self._issued}",
            "expires_in": 1800,
            "token_type": "Bearer",
            "scope": "accounting.transactions offline_access",
        }
        if refresh_token is None:
            refresh_token = f"refresh-{self._issued}"
            self.valid_refresh_tokens.add(refresh_token)
            body["refresh_token"] = refresh_token
        return httpx.Response(200, json=body)

    def _journal(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.journal_requests.append((request.headers, body))
        if self.journal_responses:
            return self._next(self.journal_responses)

        key = request.headers.get("Idempotency-Key") or str(uuid4())
        journal_id = self.journals_by_key.get(key)
        if journal_id is None:
            journal_id = f"mj-{len(self.journals_by_key) + 1:04d}"
            self.journals_by_key[key] = journal_id
        journal = dict(body["ManualJournals"][0], ManualJournalID=journal_id)
        return httpx.Response(200, json={"Status": "OK", "ManualJournals": [journal]})


@pytest.fixture
def fake_ledger():
    return FakeLedgerServer()


@pytest.fixture
def http_client(fake_ledger):
    client = httpx.Client(transport=httpx.MockTransport(fake_ledger.handler))
    yield client
    client.close()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def encryption():
    return EncryptionService("test-encryption-secret", "test-salt", iterations=1_000)


@pytest.fixture
def token_cache():
    return AccessTokenCache()


@pytest.fixture
def oauth_client(http_client, clock):
    return OAuthClient(http_client, TOKEN_URL, "client-id", "client-secret", clock=clock)


@pytest.fixture
def vault(session_factory, encryption, oauth_client, token_cache, clock):
    return CredentialVault(
        session_factory,
        encryption,
        oauth_client,
        token_cache,
        clock=clock,
        persist_attempts=2,
        sleep=lambda _: None,
    )


@pytest.fixture
def ledger_client(http_client, vault):
    return LedgerPostingClient(http_client, vault, API_BASE_URL)


@pytest.fixture
def schedule_service(session_factory, clock):
    return ScheduleService(session_factory, clock=clock)


@pytest.fixture
def connect_tenant(vault, fake_ledger, token_cache, clock):
    """
    Store a CONNECTED credential whose refresh token the fake server accepts.

    ``expires_in`` is relative to the fixed clock; pass a negative delta for
    an already-expired access token.  The in-memory cache is cleared so the
    stored row is what gets exercised.
    """

    def _connect(tenant_id: str, expires_in: timedelta = timedelta(minutes=30)) -> TokenGrant:
        refresh = f"seed-refresh-{tenant_id}"
        fake_ledger.valid_refresh_tokens.add(refresh)
        grant = TokenGrant(
            access_token=f"seed-access-{tenant_id}",
            refresh_token=refresh,
            expires_at=clock.now_utc() + expires_in,
        )
        vault.store_grant(tenant_id, grant, tenant_name=f"Org {tenant_id}")
        token_cache.invalidate(tenant_id)
        return grant

    return _connect


@pytest.fixture
def make_schedule():
    def _make(
        tenant_id: str = "tenant-a",
        schedule_type: ScheduleType = ScheduleType.PREPAID,
        start_date: date = date(2025, 11, 15),
        end_date: date = date(2026, 4, 14),
        total_amount: Decimal = Decimal("1200.00"),
        **overrides,
    ) -> ScheduleRecord:
        fields = dict(
            id=uuid4(),
            tenant_id=tenant_id,
            schedule_type=schedule_type,
            start_date=start_date,
            end_date=end_date,
            total_amount=total_amount,
            deferral_acct_code="620" if schedule_type == ScheduleType.PREPAID else "820",
            expense_acct_code="400" if schedule_type == ScheduleType.PREPAID else None,
            revenue_acct_code="200" if schedule_type == ScheduleType.UNEARNED else None,
        )
        fields.update(overrides)
        return ScheduleRecord(**fields)

    return _make
