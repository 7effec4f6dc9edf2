"""Unit of work with optimistic-concurrency retries.

Every write path that touches more than one row (stock + ledger entry,
stock + batches, transfer items + stock + ledger entries) runs through
``run_in_transaction``: the callback does its reads and writes on the
session, and the whole thing is committed or rolled back together.

Stock and Transfer rows carry a ``version_id_col``. When another request
committed a change to the same row between our read and our flush,
SQLAlchemy raises ``StaleDataError``; PostgreSQL deadlocks and serialization
failures count the same. The unit of work is rolled back and executed again
from fresh reads, with exponential backoff and jitter.
After the last attempt the conflict surfaces as ``ConflictError``.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.core.config import settings
from src.core.exceptions import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL deadlock_detected and serialization_failure
LOCK_CONFLICT_SQLSTATES = frozenset({"40P01", "40001"})


def _is_lock_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in LOCK_CONFLICT_SQLSTATES


def _backoff_delay(attempt: int) -> float:
    base_delay = settings.conflict_retry_base_delay_ms / 1000.0
    max_delay = settings.conflict_retry_max_delay_ms / 1000.0
    jitter = random.uniform(0, base_delay)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


async def run_in_transaction(
    session: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
) -> T:
    """Run ``work`` as one atomic unit and commit it.

    ``work`` must perform its own reads: on a version conflict it is called
    again after the rollback has expired every loaded instance.
    """
    max_attempts = max(1, attempts or settings.conflict_retry_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            result = await work()
            await session.commit()
            return result
        except (StaleDataError, DBAPIError) as exc:
            await session.rollback()
            if isinstance(exc, DBAPIError) and not _is_lock_conflict(exc):
                raise
            if attempt == max_attempts:
                logger.error(
                    "Concurrent modification unresolved after %d attempts: %s",
                    max_attempts,
                    exc,
                )
                raise ConflictError(
                    "The record was modified by another request. Refresh and try again."
                ) from exc
            delay = _backoff_delay(attempt)
            logger.warning(
                "Version conflict on attempt %d/%d, retrying in %.3fs",
                attempt,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
        except Exception:
            await session.rollback()
            raise
    raise AssertionError("unreachable")
