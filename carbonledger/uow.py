"""
Unit of work for ledger operations.

One unit wraps one SQLAlchemy session transaction: it commits on clean exit,
rolls back on any exception and never leaves a partial write behind.
"""

import logging
import time
from enum import Enum
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

from .errors import DuplicateOperation, LedgerError, OperationCancelled, StorageFailure

logger = logging.getLogger(__name__)


class UnitState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class UnitOfWork:
    """
    Atomic, isolated group of reads and writes.

    Example:
        with UnitOfWork(Session, "purchase_offset") as uow:
            uow.session.add(record)
            # commits here, or rolls back if the block raised

    Args:
        session_factory: SQLAlchemy sessionmaker
        name: Operation name used in log lines
        cancel_event: Optional threading.Event; when set before commit the
            unit rolls back and raises OperationCancelled
    """

    def __init__(self, session_factory, name: str, cancel_event=None):
        self.session_factory = session_factory
        self.name = name
        self.cancel_event = cancel_event
        self.state = UnitState.PENDING
        self.session = None
        self._started: Optional[float] = None

    def __enter__(self):
        self.session = self.session_factory()
        self._started = time.monotonic()
        try:
            self.session.begin()
        except SQLAlchemyError as e:
            self.session.close()
            raise self._translate(e) from e
        self.state = UnitState.IN_PROGRESS
        logger.debug("Started unit of work: %s", self.name)
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self._commit()
                return False
            self._rollback(exc)
            if isinstance(exc, SQLAlchemyError):
                raise self._translate(exc) from exc
            return False
        finally:
            self.session.close()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def check_cancelled(self):
        if self.cancelled:
            raise OperationCancelled("Operation cancelled before commit", operation=self.name)

    def _commit(self):
        try:
            self.check_cancelled()
            self.session.commit()
        except (LedgerError, SQLAlchemyError) as e:
            self._rollback(e)
            if isinstance(e, SQLAlchemyError):
                raise self._translate(e) from e
            raise
        self.state = UnitState.COMMITTED
        logger.debug("Committed unit of work: %s (%.3fs)", self.name, self.duration)

    def _rollback(self, reason):
        try:
            self.session.rollback()
        finally:
            self.state = UnitState.ROLLED_BACK
        if isinstance(reason, (SQLAlchemyError, StorageFailure)):
            logger.error("Rolled back unit of work: %s - %s", self.name, reason)
        else:
            logger.debug("Rolled back unit of work: %s - %s", self.name, reason)

    @property
    def duration(self) -> float:
        return time.monotonic() - self._started if self._started else 0.0

    def _translate(self, error: SQLAlchemyError) -> LedgerError:
        if isinstance(error, IntegrityError) and _is_unique_violation(error):
            return DuplicateOperation("Operation already recorded", operation=self.name,
                                      detail=str(error.orig))
        if isinstance(error, DBAPIError):
            return StorageFailure("Storage layer failure", operation=self.name,
                                  detail=str(error.orig))
        return StorageFailure("Storage layer failure", operation=self.name, detail=str(error))


def _is_unique_violation(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "unique" in message or "duplicate key" in message
