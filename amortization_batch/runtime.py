"""
Wiring: build the kernel collaborators for one process from settings.

PostingRuntime owns the httpx.Client and the AccessTokenCache for the
lifetime of a run; close() (or the context manager) releases the client.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Callable

import httpx
from sqlalchemy.orm import Session, sessionmaker

from amortization_kernel.config import AmortizationSettings
from amortization_kernel.domain.clock import Clock, SystemClock
from amortization_kernel.services.credential_vault import AccessTokenCache, CredentialVault
from amortization_kernel.services.encryption_service import EncryptionService
from amortization_kernel.services.ledger_client import LedgerPostingClient
from amortization_kernel.services.oauth_client import OAuthClient
from amortization_kernel.services.retry import RetryPolicy

from amortization_batch.orchestrator import PostingOrchestrator
from amortization_batch.token_refresh import TokenRefreshSweep


class PostingRuntime:
    def __init__(
        self,
        settings: AmortizationSettings,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.sleep = sleep
        self.http = http_client or httpx.Client(
            timeout=httpx.Timeout(settings.http_timeout_seconds),
        )
        self.cache = AccessTokenCache()
        self.encryption = EncryptionService(
            settings.encryption_secret,
            settings.kdf_salt,
            iterations=settings.kdf_iterations,
        )
        self.oauth = OAuthClient(
            self.http,
            settings.token_url,
            settings.client_id,
            settings.client_secret,
            clock=self.clock,
        )
        self.vault = CredentialVault(
            session_factory,
            self.encryption,
            self.oauth,
            self.cache,
            clock=self.clock,
            expiry_skew=timedelta(seconds=settings.token_expiry_skew_seconds),
            persist_attempts=settings.token_persist_attempts,
            sleep=sleep,
        )
        self.ledger = LedgerPostingClient(self.http, self.vault, settings.api_base_url)

    def orchestrator(self) -> PostingOrchestrator:
        return PostingOrchestrator(
            self.session_factory,
            self.ledger,
            self.vault,
            clock=self.clock,
            business_tz=self.settings.tzinfo,
            retry_policy=RetryPolicy(
                max_attempts=self.settings.retry_max_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                max_delay=self.settings.retry_max_delay_seconds,
            ),
            sleep=self.sleep,
            lock_ttl=timedelta(seconds=self.settings.run_lock_ttl_seconds),
        )

    def token_refresh_sweep(self) -> TokenRefreshSweep:
        return TokenRefreshSweep(self.vault)

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> PostingRuntime:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
