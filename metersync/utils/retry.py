"""Retry policy value object and the generic retry helper.

Every database operation that may hit a transient failure goes through
:func:`retry_call` with a :class:`RetryPolicy`, so attempt counts and
backoff timing are configured in one place per call site.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``delay_for(attempt)`` is the wait *before* the given attempt number
    (1-based). Attempt 1 never waits.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        delay = self.base_delay * (self.backoff_multiplier ** (attempt - 2))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


# Insert/upload batches: wait 1s before attempt 2, 2s before attempt 3
BATCH_RETRY = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0)
CONNECTION_RETRY = RetryPolicy(max_attempts=5, base_delay=2.0, backoff_multiplier=2.0, max_delay=8.0)
QUERY_RETRY = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    operation: str,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Call ``func`` until it succeeds or the policy is exhausted.

    Exceptions outside ``retry_on`` propagate immediately. After the last
    failed attempt a :class:`RetryExhaustedError` is raised carrying the
    final exception.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        delay = policy.delay_for(attempt)
        if delay > 0:
            logger.info(f"{operation}: waiting {delay:.1f}s before attempt {attempt}/{policy.max_attempts}")
            sleep(delay)

        try:
            return func()
        except retry_on as e:
            last_error = e
            logger.warning(f"{operation}: attempt {attempt}/{policy.max_attempts} failed: {e}")
            if on_retry and attempt < policy.max_attempts:
                on_retry(attempt, e)

    logger.critical(f"{operation}: giving up after {policy.max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(operation, policy.max_attempts, last_error)
