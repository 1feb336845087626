"""
Transaction Coordinator.

run_ledger_write() executes a ledger write (store + propagation + queue) in
one transaction:
- PostgreSQL: SERIALIZABLE isolation plus a LOCAL statement_timeout;
- a budget check after the work, so an over-long write rolls back as a whole.
Serialization failures surface as LedgerConflictError and timeouts as
LedgerTimeoutError; neither is retried here.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, IntegrityError, OperationalError, connections, transaction

from apps.customs.exceptions import LedgerConflictError, LedgerTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIALIZATION_FAILURE_CODES = {"40001", "40P01"}  # serialization_failure, deadlock_detected
UNIQUE_VIOLATION_CODE = "23505"
QUERY_CANCELED_CODE = "57014"


def bulk_timeout() -> float:
    return float(settings.CUSTOMS_LEDGER.get("BULK_TIMEOUT_SECONDS", 30))


def single_timeout() -> float:
    return float(settings.CUSTOMS_LEDGER.get("SINGLE_TIMEOUT_SECONDS", 10))


def _sqlstate(exc: BaseException) -> str | None:
    cause = exc.__cause__
    if cause is None:
        return None
    # psycopg 3 exposes sqlstate, psycopg2 pgcode
    return getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)


def is_serialization_failure(exc: BaseException) -> bool:
    if _sqlstate(exc) in SERIALIZATION_FAILURE_CODES:
        return True
    return "database is locked" in str(exc).lower()


def is_unique_race(exc: BaseException) -> bool:
    if _sqlstate(exc) == UNIQUE_VIOLATION_CODE:
        return True
    return "unique constraint failed" in str(exc).lower()


def is_statement_timeout(exc: BaseException) -> bool:
    return _sqlstate(exc) == QUERY_CANCELED_CODE


def _prepare_transaction(using: str, timeout: float, *, outermost: bool) -> None:
    connection = connections[using]
    if connection.vendor != "postgresql":
        return
    with connection.cursor() as cursor:
        if outermost:
            # must be the first statement of the transaction
            cursor.execute("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE")
        cursor.execute("SELECT set_config('statement_timeout', %s, true)", [str(int(timeout * 1000))])


def run_ledger_write(
    fn: Callable[[], T],
    *,
    timeout: float | None = None,
    using: str = DEFAULT_DB_ALIAS,
    monotonic: Callable[[], float] = time.monotonic,
) -> T:
    timeout = single_timeout() if timeout is None else timeout
    outermost = not connections[using].in_atomic_block
    started = monotonic()

    try:
        with transaction.atomic(using=using):
            _prepare_transaction(using, timeout, outermost=outermost)
            result = fn()

            elapsed = monotonic() - started
            if elapsed > timeout:
                # raising inside atomic() rolls the whole write back
                raise LedgerTimeoutError(timeout, elapsed)
            return result

    except LedgerTimeoutError as exc:
        logger.warning("ledger write exceeded budget timeout=%ss elapsed=%ss", exc.timeout_seconds, exc.elapsed_seconds)
        raise

    except OperationalError as exc:
        if is_serialization_failure(exc):
            logger.warning("ledger write serialization conflict: %s", exc)
            raise LedgerConflictError() from exc
        if is_statement_timeout(exc):
            logger.warning("ledger write cancelled by statement_timeout=%ss", timeout)
            raise LedgerTimeoutError(timeout) from exc
        raise

    except IntegrityError as exc:
        # two writers inserting the same (company, item, date) / queue key concurrently
        if is_unique_race(exc):
            logger.warning("ledger write lost a unique-key race: %s", exc)
            raise LedgerConflictError() from exc
        raise
