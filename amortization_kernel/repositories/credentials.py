"""
Credential repository.

Invariants enforced:
    - advance_tokens() writes the new encrypted access token, the new
      encrypted refresh token, the expiry, last_refreshed_at and CONNECTED in
      a single UPDATE.  There is no code path that writes one token without
      the other.
    - mark_disconnected() leaves the stored tokens untouched.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update

from amortization_kernel.domain.dtos import ConnectionStatus, CredentialRecord
from amortization_kernel.models.credential import CredentialModel
from amortization_kernel.repositories.base import BaseRepository


class CredentialRepository(BaseRepository):

    def get(self, tenant_id: str) -> CredentialRecord | None:
        model = self.session.execute(
            select(CredentialModel).where(CredentialModel.tenant_id == tenant_id)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None

    def list_connected(self) -> list[CredentialRecord]:
        rows = self.session.execute(
            select(CredentialModel)
            .where(CredentialModel.connection_status == ConnectionStatus.CONNECTED.value)
            .order_by(CredentialModel.tenant_id)
        ).scalars()
        return [row.to_dto() for row in rows]

    def advance_tokens(
        self,
        tenant_id: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str,
        expires_at: datetime,
        refreshed_at: datetime,
        scopes: str | None = None,
    ) -> bool:
        values = dict(
            encrypted_access_token=encrypted_access_token,
            encrypted_refresh_token=encrypted_refresh_token,
            expires_at=expires_at,
            last_refreshed_at=refreshed_at,
            connection_status=ConnectionStatus.CONNECTED.value,
            disconnect_reason=None,
        )
        if scopes is not None:
            values["scopes"] = scopes
        result = self.session.execute(
            update(CredentialModel)
            .where(CredentialModel.tenant_id == tenant_id)
            .values(**values)
        )
        return result.rowcount == 1

    def upsert_connection(
        self,
        tenant_id: str,
        encrypted_access_token: str,
        encrypted_refresh_token: str,
        expires_at: datetime,
        refreshed_at: datetime,
        tenant_name: str | None = None,
        scopes: str | None = None,
    ) -> None:
        """Create or fully replace a tenant's connection as CONNECTED."""
        updated = self.advance_tokens(
            tenant_id,
            encrypted_access_token,
            encrypted_refresh_token,
            expires_at,
            refreshed_at,
            scopes=scopes,
        )
        if updated:
            if tenant_name is not None:
                self.session.execute(
                    update(CredentialModel)
                    .where(CredentialModel.tenant_id == tenant_id)
                    .values(tenant_name=tenant_name)
                )
            return
        self.session.add(
            CredentialModel(
                tenant_id=tenant_id,
                tenant_name=tenant_name,
                encrypted_access_token=encrypted_access_token,
                encrypted_refresh_token=encrypted_refresh_token,
                expires_at=expires_at,
                last_refreshed_at=refreshed_at,
                connection_status=ConnectionStatus.CONNECTED.value,
                scopes=scopes,
                created_at=refreshed_at,
            )
        )
        self.session.flush()

    def mark_disconnected(self, tenant_id: str, reason: str) -> bool:
        result = self.session.execute(
            update(CredentialModel)
            .where(CredentialModel.tenant_id == tenant_id)
            .values(
                connection_status=ConnectionStatus.DISCONNECTED.value,
                disconnect_reason=reason,
            )
        )
        return result.rowcount == 1
