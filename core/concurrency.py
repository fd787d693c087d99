"""
Bounded retry for transactions that lose a race on a ledger row.
"""
import logging
from functools import wraps

from django.conf import settings
from django.db import OperationalError, transaction

from .exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

# Messages emitted by PostgreSQL and SQLite when a lock could not be taken
TRANSIENT_MARKERS = (
    'deadlock detected',
    'could not serialize',
    'database is locked',
    'lock timeout',
)


def is_transient(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def retry_on_conflict(func=None, *, attempts: int = None):
    """
    Run the wrapped function inside transaction.atomic(), retrying on
    ConcurrencyConflict (or a transient OperationalError) up to
    ``attempts`` times.

    When nested inside an outer transaction each attempt is a savepoint,
    so a lost race rolls back only the wrapped work.

    Usage:
        @retry_on_conflict
        def apply(...):
            ...
    """
    def decorator(wrapped):
        @wraps(wrapped)
        def wrapper(*args, **kwargs):
            max_attempts = attempts or settings.LEDGER_CONFLICT_RETRIES
            last_error = None
            for attempt in range(1, max_attempts + 1):
                try:
                    with transaction.atomic():
                        return wrapped(*args, **kwargs)
                except ConcurrencyConflict as e:
                    last_error = e
                except OperationalError as e:
                    if not is_transient(e):
                        raise
                    last_error = ConcurrencyConflict(str(e))
                logger.warning(
                    f"{wrapped.__name__}: conflict on attempt {attempt}/{max_attempts}: {last_error}"
                )
            raise last_error
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
