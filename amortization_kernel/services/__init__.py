"""Kernel services: encryption, credentials, ledger posting, schedules."""

from amortization_kernel.services.credential_vault import AccessTokenCache, CredentialVault
from amortization_kernel.services.encryption_service import EncryptionService
from amortization_kernel.services.ledger_client import LedgerPostingClient
from amortization_kernel.services.oauth_client import OAuthClient
from amortization_kernel.services.retry import RetryPolicy
from amortization_kernel.services.run_lock import RunLock
from amortization_kernel.services.schedule_service import ScheduleService

__all__ = [
    "AccessTokenCache",
    "CredentialVault",
    "EncryptionService",
    "LedgerPostingClient",
    "OAuthClient",
    "RetryPolicy",
    "RunLock",
    "ScheduleService",
]
