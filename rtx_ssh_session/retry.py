"""Retry strategies.

A strategy maps an attempt index (0 for the first retry) to a delay and a
give-up flag. Strategies hold no per-operation state, so one instance can
be reused for sequential attempts of an operation.
"""
import logging
import random
from typing import Callable, Optional, Tuple, TypeVar

from .datastructures import Deadline
from .errors import RTXError, is_retryable
from .logging_manager import get_logger

T = TypeVar('T')


class RetryStrategy:
    """Base strategy: never retries."""

    def next(self, attempt: int) -> Tuple[float, bool]:
        return 0.0, True


class NoRetry(RetryStrategy):
    pass


class ExponentialBackoff(RetryStrategy):
    """Delay doubles per attempt up to ``max_delay``; gives up after ``max_retries``.

    ``jitter`` is a fraction (0.1 means +/-10%). It defaults to 0 so the
    delay sequence stays non-decreasing.
    """

    def __init__(self, base_delay: float = 0.1, max_delay: float = 10.0, max_retries: int = 5,
                 jitter: float = 0.0):
        if base_delay < 0 or max_delay < 0 or max_retries < 0:
            raise ValueError("backoff parameters must not be negative")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.jitter = jitter

    def next(self, attempt: int) -> Tuple[float, bool]:
        if attempt >= self.max_retries:
            return 0.0, True
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay, False

    def __repr__(self):
        return (f"ExponentialBackoff(base_delay={self.base_delay}, max_delay={self.max_delay}, "
                f"max_retries={self.max_retries})")


class LinearBackoff(RetryStrategy):
    """Constant delay per attempt; gives up after ``max_retries``."""

    def __init__(self, delay: float = 0.1, max_retries: int = 2):
        if delay < 0 or max_retries < 0:
            raise ValueError("backoff parameters must not be negative")
        self.delay = delay
        self.max_retries = max_retries

    def next(self, attempt: int) -> Tuple[float, bool]:
        if attempt >= self.max_retries:
            return 0.0, True
        return self.delay, False

    def __repr__(self):
        return f"LinearBackoff(delay={self.delay}, max_retries={self.max_retries})"


def retry_call(operation: Callable[[], T], strategy: RetryStrategy,
               deadline: Optional[Deadline] = None,
               should_retry: Callable[[BaseException], bool] = is_retryable,
               description: str = "operation",
               logger: Optional[logging.Logger] = None) -> T:
    """Run ``operation`` until it succeeds, fails permanently or the strategy gives up.

    Cancellation is checked before every attempt and the backoff delay is
    itself cancellable.
    """
    deadline = deadline or Deadline()
    logger = logger or get_logger('retry')
    attempt = 0
    while True:
        deadline.check()
        try:
            return operation()
        except RTXError as exc:
            if not should_retry(exc):
                raise
            delay, give_up = strategy.next(attempt)
            if give_up:
                logger.warning(f"[RETRY_GIVE_UP] {description} failed after {attempt + 1} attempts: {exc}")
                raise
            logger.info(f"[RETRY] {description} attempt {attempt + 1} failed ({type(exc).__name__}: {exc}), "
                        f"retrying in {delay:.2f}s")
            deadline.sleep(delay)
            attempt += 1
