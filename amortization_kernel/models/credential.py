"""
ORM model for per-tenant ledger credentials.

Contract:
    CredentialModel stores the encrypted OAuth token pair for one tenant.
    Plaintext tokens never touch this table.

Invariants enforced:
    - ``tenant_id`` is UNIQUE: one connection per tenant.
    - The access/refresh pair, expiry, last_refreshed_at and status are
      always written together (CredentialRepository.advance_tokens).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from amortization_kernel.db.base import TimestampedBase
from amortization_kernel.domain.clock import ensure_utc
from amortization_kernel.domain.dtos import ConnectionStatus, CredentialRecord


class CredentialModel(TimestampedBase):
    """Encrypted ledger connection for a tenant."""

    __tablename__ = "ledger_credentials"

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    tenant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    encrypted_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    connection_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConnectionStatus.CONNECTED.value,
    )
    disconnect_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    scopes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> CredentialRecord:
        return CredentialRecord(
            tenant_id=self.tenant_id,
            encrypted_access_token=self.encrypted_access_token,
            encrypted_refresh_token=self.encrypted_refresh_token,
            expires_at=ensure_utc(self.expires_at),
            connection_status=ConnectionStatus(self.connection_status),
            disconnect_reason=self.disconnect_reason,
            last_refreshed_at=ensure_utc(self.last_refreshed_at),
            tenant_name=self.tenant_name,
            scopes=self.scopes,
        )
