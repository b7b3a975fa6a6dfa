"""Session-bound repositories returning DTOs."""

from amortization_kernel.repositories.credentials import CredentialRepository
from amortization_kernel.repositories.schedules import (
    JournalEntryRepository,
    ScheduleRepository,
)

__all__ = [
    "CredentialRepository",
    "JournalEntryRepository",
    "ScheduleRepository",
]
