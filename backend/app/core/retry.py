"""Bounded retry with exponential backoff for store calls."""

from __future__ import annotations

import random
import time
from functools import wraps
from typing import Callable, Tuple, Type, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError

from backend.app.core.settings import get_settings

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, TimeoutError, ConnectionError)


def is_transient(exc: BaseException) -> bool:
    """Return True for network/store hiccups worth another attempt."""
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class RetryPolicy:
    def __init__(
        self,
        attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = get_settings()
        self.attempts = max(1, attempts if attempts is not None else settings.billing_retry_attempts)
        self.base_delay = base_delay if base_delay is not None else settings.billing_retry_base_delay
        self.max_delay = max_delay if max_delay is not None else settings.billing_retry_max_delay
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (2**attempt)
        jitter = random.random() * 0.3 * delay
        return min(delay + jitter, self.max_delay)

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                attempt += 1
                if not is_transient(exc) or attempt >= self.attempts:
                    raise
                delay = self.delay_for(attempt - 1)
                LOGGER.warning(
                    "store_call_retry",
                    operation=getattr(fn, "__name__", repr(fn)),
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                self.sleep(delay)


def no_retry() -> RetryPolicy:
    return RetryPolicy(attempts=1, base_delay=0, max_delay=0)


def with_retry(fn):
    """Method decorator running the call through ``self.retry_policy``."""

    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        return self.retry_policy.call(fn, self, *args, **kwargs)

    return wrapper
