"""
CredentialVault -- encrypted per-tenant OAuth credentials with rotation.

Contract:
    get_valid_access_token(tenant_id) returns a usable access token,
    refreshing through the token endpoint when the stored one is within
    ``expiry_skew`` of expiring.

Invariants enforced:
    - Refresh tokens are single-use.  After a successful exchange the new
      encrypted access+refresh pair, the expiry, last_refreshed_at and
      CONNECTED are committed in one UPDATE before the access token is handed
      out.  If the server does not rotate the refresh token the stored one is
      kept.
    - If that commit keeps failing, the grant is parked in the
      AccessTokenCache as *pending* (never dropped), the stored row stays as
      it was, and StorageError is raised.  flush_pending_grants() or the
      next get_valid_access_token() for the tenant writes it.
    - Refresh for one tenant is serialized by the cache's per-tenant lock
      and re-checked after the lock is taken, so two callers never spend the
      same refresh token.
    - After invalidate() (ledger 401) neither the cached nor the stored
      access token is reused; the next caller refreshes.
    - A refused grant (invalid_grant, HTTP 400/401, ...) marks the tenant
      DISCONNECTED with the reason and raises CredentialError.  A tenant
      already DISCONNECTED raises CredentialError without any remote call.

Failure modes:
    - CredentialError: tenant must be reconnected manually.
    - DecryptionError: stored ciphertext does not match the configured
      secret.  Raised as-is; the tenant is NOT disconnected.
    - TransientNetworkError: token endpoint unavailable; credential untouched.
    - StorageError: credential row could not be read or written.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from amortization_kernel.db.engine import transactional
from amortization_kernel.domain.clock import Clock, SystemClock
from amortization_kernel.domain.dtos import CredentialRecord, TokenGrant
from amortization_kernel.exceptions import CredentialError, StorageError
from amortization_kernel.logging_config import get_logger
from amortization_kernel.repositories.credentials import CredentialRepository
from amortization_kernel.services.encryption_service import EncryptionService
from amortization_kernel.services.oauth_client import OAuthClient

logger = get_logger("services.credential_vault")

DEFAULT_EXPIRY_SKEW = timedelta(minutes=5)


@dataclass
class _CachedToken:
    access_token: str = field(repr=False)
    expires_at: datetime


class AccessTokenCache:
    """
    In-memory access tokens, pending grants and per-tenant refresh locks.

    Owned by whoever drives a run (the orchestrator or the refresh sweep);
    never shared through module state.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, _CachedToken] = {}
        self._pending: dict[str, TokenGrant] = {}
        self._rejected: set[str] = set()
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, tenant_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock

    def get(self, tenant_id: str, now: datetime, skew: timedelta) -> str | None:
        cached = self._tokens.get(tenant_id)
        if cached is None or cached.expires_at - skew <= now:
            return None
        return cached.access_token

    def put(self, tenant_id: str, access_token: str, expires_at: datetime) -> None:
        self._tokens[tenant_id] = _CachedToken(access_token, expires_at)
        self._rejected.discard(tenant_id)

    def invalidate(self, tenant_id: str) -> None:
        self._tokens.pop(tenant_id, None)

    def mark_rejected(self, tenant_id: str) -> None:
        """Drop the access token and refuse its stored copy until the next refresh."""
        self._tokens.pop(tenant_id, None)
        self._rejected.add(tenant_id)

    def is_rejected(self, tenant_id: str) -> bool:
        return tenant_id in self._rejected

    def hold_pending(self, tenant_id: str, grant: TokenGrant) -> None:
        self._pending[tenant_id] = grant

    def pending(self, tenant_id: str) -> TokenGrant | None:
        return self._pending.get(tenant_id)

    def pending_tenants(self) -> list[str]:
        return sorted(self._pending)

    def clear_pending(self, tenant_id: str) -> None:
        self._pending.pop(tenant_id, None)


class CredentialVault:
    """Per-tenant credential store backed by storage and the token endpoint."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        encryption: EncryptionService,
        oauth: OAuthClient,
        cache: AccessTokenCache,
        clock: Clock | None = None,
        expiry_skew: timedelta = DEFAULT_EXPIRY_SKEW,
        persist_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._encryption = encryption
        self._oauth = oauth
        self._cache = cache
        self._clock = clock or SystemClock()
        self._skew = expiry_skew
        self._persist_attempts = max(1, persist_attempts)
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_credential(self, tenant_id: str) -> CredentialRecord | None:
        try:
            with transactional(self._session_factory) as session:
                return CredentialRepository(session).get(tenant_id)
        except SQLAlchemyError as exc:
            raise StorageError("load_credential", type(exc).__name__) from exc

    def list_connected(self) -> list[CredentialRecord]:
        try:
            with transactional(self._session_factory) as session:
                return CredentialRepository(session).list_connected()
        except SQLAlchemyError as exc:
            raise StorageError("list_credentials", type(exc).__name__) from exc

    # -------------------------------------------------------------------------
    # Access tokens
    # -------------------------------------------------------------------------

    def get_valid_access_token(self, tenant_id: str) -> str:
        now = self._clock.now_utc()
        cached = self._cache.get(tenant_id, now, self._skew)
        if cached is not None:
            return cached

        with self._cache.lock_for(tenant_id):
            cached = self._cache.get(tenant_id, self._clock.now_utc(), self._skew)
            if cached is not None:
                return cached

            rejected = self._cache.is_rejected(tenant_id)
            pending = self._cache.pending(tenant_id)
            if pending is not None:
                self._persist_grant(tenant_id, pending, create=True)
                if not rejected and self._is_fresh(pending.expires_at):
                    self._cache.put(tenant_id, pending.access_token, pending.expires_at)
                    return pending.access_token

            record = self._require_connected(tenant_id)
            if not rejected and self._is_fresh(record.expires_at):
                token = self._encryption.decrypt(record.encrypted_access_token)
                if token:
                    self._cache.put(tenant_id, token, record.expires_at)
                    return token

            return self._refresh_locked(record).access_token

    def force_refresh(self, tenant_id: str) -> TokenGrant:
        """Exchange the refresh token now regardless of access token expiry."""
        with self._cache.lock_for(tenant_id):
            pending = self._cache.pending(tenant_id)
            if pending is not None:
                self._persist_grant(tenant_id, pending, create=True)
            record = self._require_connected(tenant_id)
            return self._refresh_locked(record)

    def invalidate(self, tenant_id: str) -> None:
        """
        Forget the access token after the ledger answered 401.

        The stored copy is no longer trusted either, so the next
        get_valid_access_token() refreshes even if expires_at looks fresh.
        """
        self._cache.mark_rejected(tenant_id)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def connect_tenant(
        self,
        tenant_id: str,
        code: str,
        redirect_uri: str,
        tenant_name: str | None = None,
    ) -> CredentialRecord:
        """Complete the authorization-code flow and store the tokens."""
        grant = self._oauth.exchange_code(tenant_id, code, redirect_uri)
        return self.store_grant(tenant_id, grant, tenant_name=tenant_name)

    def store_grant(
        self,
        tenant_id: str,
        grant: TokenGrant,
        tenant_name: str | None = None,
    ) -> CredentialRecord:
        if not grant.refresh_token:
            raise CredentialError(tenant_id, "authorization response has no refresh token")
        with self._cache.lock_for(tenant_id):
            self._persist_grant(tenant_id, grant, tenant_name=tenant_name, create=True)
            self._cache.put(tenant_id, grant.access_token, grant.expires_at)
        logger.info("credential_connected", extra={"tenant_id": tenant_id})
        record = self.get_credential(tenant_id)
        if record is None:
            raise StorageError("store_grant", "credential row missing after commit")
        return record

    def disconnect(self, tenant_id: str, reason: str) -> None:
        try:
            with transactional(self._session_factory) as session:
                CredentialRepository(session).mark_disconnected(tenant_id, reason)
        except SQLAlchemyError as exc:
            raise StorageError("disconnect_credential", type(exc).__name__) from exc
        self._cache.invalidate(tenant_id)
        logger.warning(
            "credential_disconnected",
            extra={"tenant_id": tenant_id, "reason": reason},
        )

    def flush_pending_grants(self) -> int:
        """Persist grants parked after failed writes.  Returns how many landed."""
        flushed = 0
        for tenant_id in self._cache.pending_tenants():
            grant = self._cache.pending(tenant_id)
            if grant is None:
                continue
            self._persist_grant(tenant_id, grant, create=True)
            flushed += 1
        return flushed

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _is_fresh(self, expires_at: datetime | None) -> bool:
        return expires_at is not None and expires_at - self._skew > self._clock.now_utc()

    def _require_connected(self, tenant_id: str) -> CredentialRecord:
        record = self.get_credential(tenant_id)
        if record is None:
            raise CredentialError(tenant_id, "not_connected")
        if not record.is_connected:
            raise CredentialError(tenant_id, record.disconnect_reason or "disconnected")
        return record

    def _refresh_locked(self, record: CredentialRecord) -> TokenGrant:
        tenant_id = record.tenant_id
        refresh_token = self._encryption.decrypt(record.encrypted_refresh_token)
        if not refresh_token:
            self.disconnect(tenant_id, "no_refresh_token")
            raise CredentialError(tenant_id, "no_refresh_token")

        try:
            grant = self._oauth.refresh(tenant_id, refresh_token)
        except CredentialError as exc:
            self.disconnect(tenant_id, exc.reason)
            raise

        if grant.refresh_token is None:
            grant = replace(grant, refresh_token=refresh_token)

        self._persist_grant(tenant_id, grant)
        self._cache.put(tenant_id, grant.access_token, grant.expires_at)
        logger.info(
            "credential_refreshed",
            extra={
                "tenant_id": tenant_id,
                "expires_at": grant.expires_at,
                "rotated": grant.refresh_token != refresh_token,
            },
        )
        return grant

    def _persist_grant(
        self,
        tenant_id: str,
        grant: TokenGrant,
        tenant_name: str | None = None,
        create: bool = False,
    ) -> None:
        encrypted_access = self._encryption.encrypt(grant.access_token)
        encrypted_refresh = self._encryption.encrypt(grant.refresh_token)
        refreshed_at = self._clock.now_utc()
        last_exc: SQLAlchemyError | None = None

        for attempt in range(1, self._persist_attempts + 1):
            try:
                with transactional(self._session_factory) as session:
                    repo = CredentialRepository(session)
                    if create:
                        repo.upsert_connection(
                            tenant_id,
                            encrypted_access,
                            encrypted_refresh,
                            grant.expires_at,
                            refreshed_at,
                            tenant_name=tenant_name,
                            scopes=grant.scopes,
                        )
                    elif not repo.advance_tokens(
                        tenant_id,
                        encrypted_access,
                        encrypted_refresh,
                        grant.expires_at,
                        refreshed_at,
                        scopes=grant.scopes,
                    ):
                        raise CredentialError(tenant_id, "not_connected")
                self._cache.clear_pending(tenant_id)
                return
            except SQLAlchemyError as exc:
                last_exc = exc
                logger.warning(
                    "credential_persist_failed",
                    extra={
                        "tenant_id": tenant_id,
                        "attempt": attempt,
                        "error": type(exc).__name__,
                    },
                )
                if attempt < self._persist_attempts:
                    self._sleep(0.2 * attempt)

        self._cache.hold_pending(tenant_id, grant)
        logger.error(
            "credential_persist_exhausted",
            extra={"tenant_id": tenant_id, "attempts": self._persist_attempts},
        )
        raise StorageError("persist_token_grant", type(last_exc).__name__) from last_exc
