"""Retry wrapper for outbound calls.

Usage
-----
    helper = RetryHelper(max_attempts=3, backoff_seconds=[1, 4],
                         retry_on=(requests.RequestException,))
    response = helper.execute_with_retry(lambda: session.get(url, timeout=30))

The helper never swallows the last failure: once attempts are exhausted the
final exception propagates to the caller unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_BACKOFF_SECONDS = (1, 4)    # sleep[0] after 1st fail, sleep[1] after 2nd, ...


class RetryHelper:
    """Execute a zero-argument operation with bounded retries and backoff.

    Args:
        max_attempts:    Total number of calls, including the first one.
        backoff_seconds: Sleep between attempts; the last value is reused
                         when there are more retries than entries.
        retry_on:        Exception types considered transient. Anything else
                         is raised immediately.
        sleep:           Injected for tests.
    """

    def __init__(
        self,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: Sequence[float] = _DEFAULT_BACKOFF_SECONDS,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = list(backoff_seconds) or [0]
        self.retry_on = retry_on
        self._sleep = sleep

    def _delay_for(self, attempt: int) -> float:
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds) - 1)]

    def execute_with_retry(self, operation: Callable[[], T]) -> T:
        """Call ``operation`` until it succeeds or attempts run out.

        Returns:
            Whatever ``operation`` returns on its first successful call.

        Raises:
            The exception of the final failed attempt, or any exception not
            listed in ``retry_on`` as soon as it occurs.
        """
        for attempt in range(self.max_attempts):
            try:
                return operation()
            except self.retry_on as exc:
                if attempt + 1 >= self.max_attempts:
                    logger.error(
                        "Operation failed after %d attempts: %s",
                        self.max_attempts, exc,
                    )
                    raise
                delay = self._delay_for(attempt)
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %ss",
                    attempt + 1, self.max_attempts, exc, delay,
                )
                self._sleep(delay)
        # Unreachable: the loop either returns or raises.
        raise RuntimeError("RetryHelper exhausted without result")
