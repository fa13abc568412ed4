# /core/retry.py

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.config import settings
from core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delays(attempts: int, initial_delay: float, max_delay: float):
    """Yields the sleep before each retry: doubling, capped at ``max_delay``."""
    delay = initial_delay
    for _ in range(max(attempts - 1, 0)):
        yield min(delay, max_delay)
        delay *= 2


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until a ``time.monotonic()`` deadline, or None without one."""
    if deadline is None:
        return None
    return deadline - time.monotonic()


def call_with_backoff(
    fn: Callable[[], T],
    retry_on: Tuple[Type[BaseException], ...],
    attempts: int = None,
    initial_delay: float = None,
    max_delay: float = None,
    description: str = "call",
    sleep: Callable[[float], None] = None,
    deadline: Optional[float] = None,
) -> T:
    """
    Runs ``fn`` and retries it on transient failures.
    Only exceptions listed in ``retry_on`` are retried, anything else propagates immediately.
    This budget is independent from the structural retry loops of the pipeline.

    With a ``deadline`` (a ``time.monotonic()`` timestamp) no retry is started that
    would begin after it; the last failure is raised instead.
    """
    attempts = attempts or settings.NETWORK_RETRY_ATTEMPTS
    initial_delay = settings.NETWORK_RETRY_INITIAL_DELAY if initial_delay is None else initial_delay
    max_delay = settings.NETWORK_RETRY_MAX_DELAY if max_delay is None else max_delay
    sleep = sleep or time.sleep

    delays = backoff_delays(attempts, initial_delay, max_delay)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as e:
            delay = next(delays, None)
            if delay is None:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            left = remaining_time(deadline)
            if left is not None and delay >= left:
                logger.error(f"{description} failed after {attempt} attempts, no time left before its deadline: {e}")
                raise
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s: {e}")
            sleep(delay)
