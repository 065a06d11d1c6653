"""Bounded retry with exponential backoff and jitter.

Used at the coordinator boundary to ride out transient store failures:

    result = retry_sync(
        lambda: commit(),
        config=RetryConfig(max_retries=3, retryable_exceptions=(StoreUnavailable,)),
    )

Anything not listed in `retryable_exceptions` propagates on the first raise.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry behaviour.

    Attributes:
        max_retries: attempts after the first one (0 = no retry)
        base_delay: seconds before the first retry
        max_delay: cap for any single delay
        backoff_factor: delay multiplier per attempt
        jitter: add +/- `jitter_range` random spread to each delay
        retryable_exceptions: exception types worth retrying
    """

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)
        if self.jitter and delay > 0:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    *,
    on_retry: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `func` until it succeeds or the retry budget is spent.

    The last retryable exception is re-raised unchanged.
    """
    cfg = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return func()
        except cfg.retryable_exceptions as e:
            if attempt >= cfg.max_retries:
                logger.warning("giving up after %d attempts: %s", attempt + 1, e)
                raise
            delay = cfg.delay_for(attempt)
            attempt += 1
            logger.warning("attempt %d failed (%s), retrying in %.2fs", attempt, e, delay)
            if on_retry is not None:
                on_retry(e, attempt)
            sleep(delay)
