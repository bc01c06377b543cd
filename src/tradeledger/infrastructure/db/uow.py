# src/tradeledger/infrastructure/db/uow.py
"""
Unit of Work for the ledger store.

`session_scope` is the plain transactional scope (commit on success, rollback
on any exception). `run_in_transaction` is the store's transaction primitive:
it runs a read-modify-write function inside a fresh scope and, when the
commit detects a concurrent write (stale version counter or a serialization
failure), rolls back and re-runs the whole function against a new snapshot.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Generator, Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from tradeledger.config import settings
from tradeledger.domain.errors import LedgerError, TransactionConflict
from .base import SessionLocal

log = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATEs raised by Postgres for serialization failures and deadlocks
_RETRYABLE_PGCODES = {"40001", "40P01"}


def _is_conflict(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError):
        orig = getattr(exc, "orig", None)
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        return code in _RETRYABLE_PGCODES
    return False


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.
    This handles session creation, commit, rollback, and closing.
    """
    session = (session_factory or SessionLocal)()
    log.debug(f"Session {id(session)} opened.")
    try:
        yield session
        session.commit()
        log.debug(f"Session {id(session)} committed.")
    except LedgerError as e:
        log.info(f"Session {id(session)} rollback: {e.__class__.__name__}: {e}")
        session.rollback()
        raise
    except Exception as e:
        if _is_conflict(e):
            log.warning(f"Session {id(session)} rollback due to concurrent write: {e}")
        else:
            log.error(f"Session {id(session)} rollback due to exception: {e}", exc_info=True)
        session.rollback()
        raise
    finally:
        session.close()
        log.debug(f"Session {id(session)} closed.")


def run_in_transaction(
    fn: Callable[[Session], T],
    session_factory: Optional[sessionmaker] = None,
    max_attempts: Optional[int] = None,
) -> T:
    """
    Run `fn(session)` atomically, retrying on write conflicts.

    Domain errors raised by `fn` abort immediately and propagate unchanged.
    When every attempt conflicts, `TransactionConflict` is raised.
    """
    attempts = max_attempts or settings.TX_MAX_ATTEMPTS
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            with session_scope(session_factory) as session:
                return fn(session)
        except Exception as e:
            if not _is_conflict(e):
                raise
            last_error = e
            log.info(f"Transaction conflict on attempt {attempt}/{attempts}; retrying.")
    raise TransactionConflict(
        f"Could not commit after {attempts} attempts: {last_error}"
    ) from last_error
