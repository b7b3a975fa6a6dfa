"""
TokenRefreshSweep -- keep every connected tenant's refresh token alive.

Refresh tokens expire after a period of inactivity, so a tenant whose
schedules have nothing due for weeks would otherwise lose its connection.
The sweep force-refreshes each CONNECTED credential once.

Invariants enforced:
    - One tenant's failure never stops the sweep.
    - Refused grants disconnect the tenant (inside the vault); transient
      failures leave the credential untouched for the next sweep.
    - StorageError aborts the sweep and propagates.
"""

from __future__ import annotations

from uuid import uuid4

from amortization_kernel.exceptions import (
    CredentialError,
    DecryptionError,
    StorageError,
    TransientNetworkError,
)
from amortization_kernel.logging_config import LogContext, get_logger
from amortization_kernel.services.credential_vault import CredentialVault

from amortization_batch.domain.types import (
    RefreshItemStatus,
    TokenRefreshItem,
    TokenRefreshResult,
)

logger = get_logger("batch.token_refresh")


class TokenRefreshSweep:
    def __init__(self, vault: CredentialVault):
        self._vault = vault

    def run(self, run_id: str | None = None) -> TokenRefreshResult:
        run_id = run_id or str(uuid4())
        items: list[TokenRefreshItem] = []

        with LogContext.bind(run_id=run_id):
            credentials = self._vault.list_connected()
            logger.info("token_refresh_started", extra={"tenant_count": len(credentials)})

            for credential in credentials:
                with LogContext.bind(tenant_id=credential.tenant_id):
                    items.append(self._refresh_one(credential.tenant_id))

            result = TokenRefreshResult(
                run_id=run_id,
                refreshed=sum(1 for i in items if i.status == RefreshItemStatus.REFRESHED),
                disconnected=sum(1 for i in items if i.status == RefreshItemStatus.DISCONNECTED),
                failed=sum(1 for i in items if i.status == RefreshItemStatus.FAILED),
                items=tuple(items),
            )
            logger.info(
                "token_refresh_completed",
                extra={
                    "refreshed": result.refreshed,
                    "disconnected": result.disconnected,
                    "failed": result.failed,
                },
            )
            return result

    def _refresh_one(self, tenant_id: str) -> TokenRefreshItem:
        try:
            grant = self._vault.force_refresh(tenant_id)
        except StorageError:
            raise
        except CredentialError as exc:
            return TokenRefreshItem(
                tenant_id, RefreshItemStatus.DISCONNECTED,
                error_code=exc.code, error_message=exc.reason,
            )
        except (TransientNetworkError, DecryptionError) as exc:
            logger.warning(
                "token_refresh_failed",
                extra={"error_code": exc.code, "error": exc.message},
            )
            return TokenRefreshItem(
                tenant_id, RefreshItemStatus.FAILED,
                error_code=exc.code, error_message=exc.message,
            )
        return TokenRefreshItem(tenant_id, RefreshItemStatus.REFRESHED, expires_at=grant.expires_at)
