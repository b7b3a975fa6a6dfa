"""
Module: amortization_kernel.repositories.base
Responsibility: Abstract base for session-bound repositories.
Architecture position: Kernel > Repositories.  May import from db/, models/
    and domain/dtos.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - DTO return convention: repositories return frozen dataclasses, never
      ORM instances, so callers can hold results after the session closes.
    - Session ownership: repositories never create sessions and never
      commit; the caller owns the transaction scope (db.engine.transactional).
    - Explicit id lookups only: no relationship traversal.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseRepository(ABC):
    """
    Abstract base class for all repositories.

    Args:
        session: SQLAlchemy session owned by the caller.
    """

    def __init__(self, session: Session):
        self.session = session
