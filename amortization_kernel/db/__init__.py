"""Database layer - engine, base classes, money helpers."""

from amortization_kernel.db.base import Base, TimestampedBase, UUIDString
from amortization_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    transactional,
)
from amortization_kernel.db.types import round_money

__all__ = [
    "Base",
    "TimestampedBase",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "round_money",
    "transactional",
]
