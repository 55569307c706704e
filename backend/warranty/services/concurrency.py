# Overview: Service-layer operations for concurrency; transactions, retry loops and storage error translation.

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..deadline import Deadline
from ..errors import ConflictError, DependencyUnavailableError
from ..extensions import db

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3


def _constraint_name(exc: IntegrityError) -> str | None:
    diag = getattr(exc.orig, "diag", None)
    name = getattr(diag, "constraint_name", None)
    if name:
        return name
    # sqlite3 only reports the column list: "UNIQUE constraint failed: t.col"
    message = str(exc.orig)
    if "constraint failed:" in message:
        return message.split("constraint failed:", 1)[1].strip()
    return None


@contextmanager
def translate_db_errors(operation: str = "database operation") -> Iterator[None]:
    """
    Map storage-driver exceptions to error kinds. This is the only place
    driver errors are classified; the original is chained as __cause__.
    """
    try:
        yield
    except IntegrityError as exc:
        raise ConflictError(
            f"{operation} violates a uniqueness or integrity constraint",
            details={"constraint": _constraint_name(exc)},
        ) from exc
    except StaleDataError as exc:
        raise ConflictError(f"{operation} lost a concurrent update") from exc
    except OperationalError as exc:
        raise DependencyUnavailableError(f"{operation} failed: database unavailable") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise DependencyUnavailableError(f"{operation} failed: connection lost") from exc
        raise


def apply_statement_timeout(deadline: Deadline | None, ceiling_ms: int) -> None:
    """
    Bound each statement of the current transaction to the smaller of the
    configured ceiling and the time left on the request deadline.

    NOTE: Only PostgreSQL supports a per-transaction statement timeout;
    SQLite relies on its busy timeout.
    """
    if db.session.get_bind().dialect.name != "postgresql":
        return
    timeout_ms = deadline.statement_timeout_ms(ceiling_ms) if deadline else ceiling_ms
    db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


@contextmanager
def transaction(
    deadline: Deadline | None = None,
    *,
    statement_timeout_ms: int | None = None,
    operation: str = "transaction",
) -> Iterator:
    """
    Single all-or-nothing unit of work on the scoped session.

    Commits on success, rolls back on any exception, and translates
    driver errors raised by the body or by the commit itself.
    """
    if deadline is not None:
        deadline.check(operation)
    try:
        with translate_db_errors(operation):
            if statement_timeout_ms:
                apply_statement_timeout(deadline, statement_timeout_ms)
            yield db.session
            db.session.commit()
    except BaseException:
        db.session.rollback()
        raise


def run_with_retry(
    func: Callable[[], T],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff_base: float = 0.05,
    retry_on: tuple[type[Exception], ...] = (ConflictError,),
) -> T:
    """
    Execute an optimistic unit of work with bounded retries.

    Only two loops use this: conflict retries inside documented optimistic
    sections (claim numbers, timeline sequence) and dependency_unavailable
    retries on idempotent reads. Mutating use cases do not retry on
    dependency failures.
    """
    for attempt in range(attempts):
        try:
            with translate_db_errors():
                return func()
        except retry_on:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    raise AssertionError("unreachable")


def read_with_retry(func: Callable[[], T], *, attempts: int = DEFAULT_ATTEMPTS) -> T:
    return run_with_retry(func, attempts=attempts, retry_on=(DependencyUnavailableError,))
