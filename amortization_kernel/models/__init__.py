"""ORM models.  Importing this package registers every table on Base.metadata."""

from amortization_kernel.models.credential import CredentialModel
from amortization_kernel.models.run_lock import RunLockModel
from amortization_kernel.models.schedule import JournalEntryModel, ScheduleModel

__all__ = [
    "CredentialModel",
    "JournalEntryModel",
    "RunLockModel",
    "ScheduleModel",
]
