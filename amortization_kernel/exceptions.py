"""
Typed Exception Hierarchy for the amortization kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The posting batch must tell apart "this tenant needs a human to reconnect",
"the ledger rejected this journal", "the network hiccupped" and "the database
is gone".  Each of those has a different consequence for the run, so callers
catch by TYPE, never by message text.

Every exception:
  1. Is a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, log-safe)
  3. Carries structured DATA (tenant_id, status_code, payload, ...)

Example:
    try:
        client.post_entry(schedule, entry)
    except CredentialError as e:
        blocked_tenants.add(e.tenant_id)      # skip the tenant for this run
    except RemoteRejectionError as e:
        log.error("rejected", extra={"payload": e.payload})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    AmortizationError (base)
    |
    +-- ConfigurationError
    |
    +-- ScheduleError
    |   +-- InvalidRangeError
    |   +-- InvalidAmountError
    |   +-- InvalidScheduleError
    |   +-- ScheduleNotFoundError
    |   +-- ScheduleLockedError
    |
    +-- EncryptionError
    |   +-- DecryptionError
    |
    +-- CredentialError
    |
    +-- LedgerError
    |   +-- RemoteRejectionError
    |   +-- TransientNetworkError
    |   +-- UnbalancedJournalError
    |
    +-- StorageError
        +-- RunLockHeldError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                  | When Raised
----------------|-----------------------|-----------------------------------------
Config          | CONFIGURATION_ERROR   | Required setting missing or malformed
----------------|-----------------------|-----------------------------------------
Schedule        | INVALID_RANGE         | start_date after end_date
                | INVALID_AMOUNT        | Total not positive or not whole cents
                | INVALID_SCHEDULE      | Missing account code / unknown type
                | SCHEDULE_NOT_FOUND    | Schedule id doesn't exist
                | SCHEDULE_LOCKED       | Regenerating a schedule with posted entries
----------------|-----------------------|-----------------------------------------
Encryption      | DECRYPTION_FAILED     | Wrong secret or tampered ciphertext
----------------|-----------------------|-----------------------------------------
Credential      | CREDENTIAL_ERROR      | Tenant must be reconnected manually
----------------|-----------------------|-----------------------------------------
Ledger          | REMOTE_REJECTION      | Ledger refused the journal (no retry)
                | TRANSIENT_NETWORK     | Transport error, 5xx or 429 (retry)
                | UNBALANCED_JOURNAL    | Journal lines don't sum to zero
----------------|-----------------------|-----------------------------------------
Storage         | STORAGE_ERROR         | Database unreachable / write failed
                | RUN_LOCK_HELD         | Another posting run holds the lock
"""

from datetime import date
from decimal import Decimal
from typing import Any


class AmortizationError(Exception):
    """Base exception for all amortization kernel errors."""

    code: str = "AMORTIZATION_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(AmortizationError):
    """Deployment configuration is missing or malformed."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, setting: str, reason: str):
        self.setting = setting
        self.reason = reason
        super().__init__(f"Invalid configuration for {setting}: {reason}")


# =============================================================================
# Schedule errors
# =============================================================================


class ScheduleError(AmortizationError):
    """Base for schedule generation and maintenance errors."""

    code: str = "SCHEDULE_ERROR"


class InvalidRangeError(ScheduleError):
    """Schedule start date falls after its end date."""

    code: str = "INVALID_RANGE"

    def __init__(self, start_date: date, end_date: date):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"Schedule start {start_date} is after end {end_date}"
        )


class InvalidAmountError(ScheduleError):
    """Schedule total is not a positive whole-cent amount."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str):
        self.amount = str(amount)
        self.reason = reason
        super().__init__(f"Invalid schedule amount {amount!r}: {reason}")


class InvalidScheduleError(ScheduleError):
    """Schedule is structurally unusable for posting."""

    code: str = "INVALID_SCHEDULE"

    def __init__(self, schedule_id: str, reason: str):
        self.schedule_id = schedule_id
        self.reason = reason
        super().__init__(f"Schedule {schedule_id} is invalid: {reason}")


class ScheduleNotFoundError(ScheduleError):
    """Schedule id doesn't exist."""

    code: str = "SCHEDULE_NOT_FOUND"

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


class ScheduleLockedError(ScheduleError):
    """Schedule has posted entries and its plan can no longer change."""

    code: str = "SCHEDULE_LOCKED"

    def __init__(self, schedule_id: str, posted_count: int):
        self.schedule_id = schedule_id
        self.posted_count = posted_count
        super().__init__(
            f"Schedule {schedule_id} has {posted_count} posted entries; "
            "entries cannot be regenerated"
        )


# =============================================================================
# Encryption errors
# =============================================================================


class EncryptionError(AmortizationError):
    """Base for token encryption errors."""

    code: str = "ENCRYPTION_ERROR"


class DecryptionError(EncryptionError):
    """Ciphertext could not be authenticated with the configured secret.

    Raised for a wrong secret as well as for tampered or truncated input.
    Never accompanied by a partial plaintext.
    """

    code: str = "DECRYPTION_FAILED"

    def __init__(self, reason: str = "ciphertext failed authentication"):
        self.reason = reason
        super().__init__(
            f"Unable to decrypt credential: {reason}. "
            "Check that the encryption secret matches the one used to store it."
        )


# =============================================================================
# Credential errors
# =============================================================================


class CredentialError(AmortizationError):
    """Tenant's ledger connection is unusable until manually reconnected.

    Not a transient failure: the orchestrator skips every remaining entry of
    the tenant for the rest of the run.
    """

    code: str = "CREDENTIAL_ERROR"

    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(
            f"Ledger connection for tenant {tenant_id} requires reconnection: {reason}"
        )


# =============================================================================
# Ledger errors
# =============================================================================


class LedgerError(AmortizationError):
    """Base for external ledger errors."""

    code: str = "LEDGER_ERROR"


class RemoteRejectionError(LedgerError):
    """Ledger refused the journal; retrying the same request won't help."""

    code: str = "REMOTE_REJECTION"

    def __init__(
        self,
        tenant_id: str,
        status_code: int,
        payload: Any,
        messages: list[str] | None = None,
    ):
        self.tenant_id = tenant_id
        self.status_code = status_code
        self.payload = payload
        self.messages = messages or []
        detail = "; ".join(self.messages) if self.messages else "no validation messages"
        super().__init__(
            f"Ledger rejected journal for tenant {tenant_id} "
            f"(HTTP {status_code}): {detail}"
        )


class TransientNetworkError(LedgerError):
    """Transport failure, server error or rate limit; safe to retry."""

    code: str = "TRANSIENT_NETWORK"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class UnbalancedJournalError(LedgerError):
    """Journal lines don't sum to zero."""

    code: str = "UNBALANCED_JOURNAL"

    def __init__(self, total: Decimal):
        self.total = str(total)
        super().__init__(f"Journal lines sum to {total}, expected 0")


# =============================================================================
# Storage errors
# =============================================================================


class StorageError(AmortizationError):
    """Persistent store unreachable or a write could not be committed.

    Fatal for a posting run: the remainder is aborted and the next scheduled
    run retries from persisted state.
    """

    code: str = "STORAGE_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Storage failure during {operation}: {reason}")


class RunLockHeldError(StorageError):
    """Another posting run currently holds the run lock."""

    code: str = "RUN_LOCK_HELD"

    def __init__(self, lock_name: str, holder: str):
        self.lock_name = lock_name
        self.holder = holder
        super().__init__(
            "acquire_run_lock", f"lock {lock_name!r} is held by {holder}"
        )
