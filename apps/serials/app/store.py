from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from . import config
from .errors import TransientError

log = logging.getLogger("serials.store")

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """
    Lock waits, statement timeouts and dropped connections are worth
    another attempt; constraint violations never are.
    """
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def backoff_delay(attempt: int, base_ms: Optional[int] = None) -> float:
    base = config.BOOKING_BACKOFF_MS if base_ms is None else base_ms
    return (base * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)) / 1000.0


def run_with_retry(
    s: Session,
    fn: Callable[[], T],
    op: str,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``fn`` and retry it on transient store failures with jittered
    exponential backoff. The session is rolled back before each retry.
    Exhausting the budget raises :class:`TransientError`.
    """
    attempts = max_attempts or config.BOOKING_MAX_ATTEMPTS
    n = 0
    while True:
        n += 1
        try:
            return fn()
        except DBAPIError as e:
            if not is_transient(e):
                raise
            s.rollback()
            if n >= attempts:
                log.warning("%s: store unavailable after %d attempts: %s", op, n, e)
                raise TransientError(f"{op}: storage temporarily unavailable; retry", attempts=n) from e
            delay = backoff_delay(n)
            log.info("%s: transient store error (attempt %d/%d), retrying in %.3fs", op, n, attempts, delay)
            sleep(delay)
