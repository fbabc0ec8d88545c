"""
Optimistic-concurrency helpers for read-modify-write transactions.

Inventory rows carry a version counter; a concurrent writer makes the flush
fail with StaleDataError. The whole unit of work is re-run from a fresh read.
"""
import time
from typing import Callable, Optional, TypeVar

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TransactionConflict(Exception):
    """Retries exhausted on a conflicting concurrent write; the caller may try again."""


def run_with_retry(
    db: Session,
    func: Callable[[], T],
    *,
    attempts: Optional[int] = None,
    backoff_base: Optional[float] = None,
) -> T:
    """
    Execute a DB unit of work, retrying on concurrency-related failures.

    `func` must read what it mutates and commit on its own. Retries on
    OperationalError (deadlocks, locks) and StaleDataError (version conflicts),
    rolling back between attempts.
    """
    attempts = attempts if attempts is not None else settings.transaction_attempts
    backoff_base = backoff_base if backoff_base is not None else settings.transaction_backoff
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.rollback()
            if attempt >= attempts - 1:
                raise TransactionConflict(str(exc)) from exc
            logger.warning("transaction_retry", attempt=attempt + 1, error=str(exc))
            time.sleep(backoff_base * (2 ** attempt))
    raise TransactionConflict("no attempts made")
