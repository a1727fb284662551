"""
Single-statement writes with bounded retry on storage conflicts.

Every counter mutation in the metering engine is one atomic SQL statement
committed on its own. When the store reports a lock timeout, deadlock or
serialization failure (OperationalError) the statement did not apply, so it
is rolled back and retried a bounded number of times.
"""
import logging
import random
import time
from typing import Any, Dict, Optional
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import settings

logger = logging.getLogger(__name__)

_BACKOFF_MIN_MS = 20
_BACKOFF_MAX_MS = 200


class UsagePersistenceError(RuntimeError):
    """Raised when an atomic usage write still conflicts after all retries."""


def execute_atomic(
    db: Session,
    statement,
    params: Dict[str, Any],
    description: str,
    attempts: Optional[int] = None
):
    """
    Execute and commit one statement, retrying on storage conflicts.

    Args:
        db: Database session
        statement: SQLAlchemy executable (usually a text() clause)
        params: Bind parameters
        description: Short label for logs (e.g. "usage_increment user_id=...")
        attempts: Max attempts (defaults to USAGE_WRITE_ATTEMPTS)

    Returns:
        First returned row (or None) for statements with RETURNING,
        otherwise the affected row count

    Raises:
        UsagePersistenceError: If every attempt hit a storage conflict
    """
    if attempts is None:
        attempts = max(settings.usage_write_attempts, 1)

    for attempt in range(1, attempts + 1):
        try:
            result = db.execute(statement, params)
            outcome = result.first() if result.returns_rows else result.rowcount
            db.commit()
            return outcome
        except OperationalError as e:
            db.rollback()
            if attempt >= attempts:
                logger.error(f"PERSISTENCE_CONFLICT: {description} failed after {attempts} attempts: {str(e)}", exc_info=True)
                raise UsagePersistenceError(f"Storage conflict during {description}") from e
            delay = random.randint(_BACKOFF_MIN_MS, _BACKOFF_MAX_MS) / 1000
            logger.warning(f"PERSISTENCE_CONFLICT: {description} attempt {attempt}/{attempts} failed, retrying in {delay:.3f}s: {str(e)}")
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise
