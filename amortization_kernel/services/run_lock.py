"""
Advisory run lock stored in ``posting_run_locks``.

Contract:
    with RunLock(factory, "daily_posting", holder=run_id, ttl=...):
        ...  # only one holder at a time

Invariants enforced:
    - At most one live row per lock name (UNIQUE name).
    - A lock whose expires_at has passed is stale and may be taken over; a
      crashed run therefore blocks later runs for at most ``ttl``.
    - release() only deletes the row if this holder still owns it.

Failure modes:
    - RunLockHeldError if a live lock belongs to someone else.
    - StorageError if the lock table cannot be read or written.
"""

from __future__ import annotations

from datetime import timedelta
from types import TracebackType

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from amortization_kernel.db.engine import transactional
from amortization_kernel.domain.clock import Clock, SystemClock, ensure_utc
from amortization_kernel.exceptions import RunLockHeldError, StorageError
from amortization_kernel.logging_config import get_logger
from amortization_kernel.models.run_lock import RunLockModel

logger = get_logger("services.run_lock")


class RunLock:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        name: str,
        holder: str,
        ttl: timedelta = timedelta(hours=1),
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self.name = name
        self.holder = holder
        self._ttl = ttl
        self._clock = clock or SystemClock()
        self._held = False

    def acquire(self) -> None:
        now = self._clock.now_utc()
        try:
            with transactional(self._session_factory) as session:
                existing = session.execute(
                    select(RunLockModel).where(RunLockModel.name == self.name)
                ).scalar_one_or_none()
                if existing is not None:
                    if ensure_utc(existing.expires_at) > now and existing.holder != self.holder:
                        raise RunLockHeldError(self.name, existing.holder)
                    logger.warning(
                        "run_lock_taken_over",
                        extra={"lock_name": self.name, "stale_holder": existing.holder},
                    )
                    session.delete(existing)
                    session.flush()
                session.add(
                    RunLockModel(
                        name=self.name,
                        holder=self.holder,
                        acquired_at=now,
                        expires_at=now + self._ttl,
                    )
                )
        except IntegrityError as exc:
            # Another process inserted between our read and write.
            raise RunLockHeldError(self.name, "unknown") from exc
        except SQLAlchemyError as exc:
            raise StorageError("acquire_run_lock", type(exc).__name__) from exc
        self._held = True
        logger.info("run_lock_acquired", extra={"lock_name": self.name, "holder": self.holder})

    def release(self) -> None:
        if not self._held:
            return
        try:
            with transactional(self._session_factory) as session:
                session.execute(
                    delete(RunLockModel).where(
                        RunLockModel.name == self.name,
                        RunLockModel.holder == self.holder,
                    )
                )
        except SQLAlchemyError as exc:
            logger.error(
                "run_lock_release_failed",
                extra={"lock_name": self.name, "error": type(exc).__name__},
            )
            return
        finally:
            self._held = False
        logger.info("run_lock_released", extra={"lock_name": self.name})

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
