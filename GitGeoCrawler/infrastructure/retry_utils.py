"""
Retry, pacing and per-run quota utilities for talking to the GitHub API.
"""

import time
import logging
from typing import Callable, Optional, TypeVar
from functools import wraps
from datetime import datetime

from core.errors import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0
) -> Callable:
    """
    Decorator for exponential backoff retry logic.

    Only TransientNetworkError is retried. Rate limits, quota exhaustion and
    item errors propagate immediately so the orchestrator can decide.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        exponential_base: Multiplier for exponential growth
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TransientNetworkError as e:
                    if attempt == max_retries:
                        logger.error(
                            f"Max retries ({max_retries}) reached for {func.__name__}"
                        )
                        raise

                    # Calculate delay with exponential backoff
                    delay = min(
                        base_delay * (exponential_base ** attempt),
                        max_delay
                    )

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries} failed for "
                        f"{func.__name__}: {str(e)}. Retrying in {delay:.1f}s..."
                    )
                    time.sleep(delay)

            raise AssertionError("unreachable")

        return wrapper
    return decorator


class QuotaGovernor:
    """
    Self-imposed ceiling on API calls within a single invocation.

    The ceiling is configuration, kept well below GitHub's own limit so other
    consumers of the same token keep some headroom.
    """

    def __init__(self, budget: int):
        if budget < 0:
            raise ValueError("budget cannot be negative")
        self.budget = budget
        self.requests_made = 0

    def try_consume(self) -> bool:
        """Reserve one call. Returns False, without counting, once the ceiling is reached."""
        if self.requests_made >= self.budget:
            return False
        self.requests_made += 1
        logger.debug(f"API request count: {self.requests_made}/{self.budget}")
        return True

    @property
    def exhausted(self) -> bool:
        return self.requests_made >= self.budget

    @property
    def remaining(self) -> int:
        return max(0, self.budget - self.requests_made)


class RequestPacer:
    """
    Keeps calls under GitHub's soft request rate by spacing them out.
    Also reports the platform's remaining quota when it runs low.
    """

    def __init__(
        self,
        delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            delay: Minimum seconds between two consecutive requests
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        self.delay = delay
        self._sleep = sleep
        self._clock = clock
        self._last_request: Optional[float] = None
        self.last_remaining: Optional[int] = None
        self.last_reset_at: Optional[datetime] = None

    def wait(self):
        """Sleep until at least `delay` seconds have passed since the last call."""
        if self._last_request is not None and self.delay > 0:
            elapsed = self._clock() - self._last_request
            if elapsed < self.delay:
                self._sleep(self.delay - elapsed)
        self._last_request = self._clock()

    def update_from_headers(self, remaining: Optional[int], reset_at: Optional[datetime]):
        """
        Update pacer state from API response headers.

        Args:
            remaining: Remaining requests reported by GitHub
            reset_at: When GitHub's window resets
        """
        self.last_remaining = remaining
        self.last_reset_at = reset_at

        if remaining is not None and remaining < 100:
            logger.info(
                f"GitHub rate limit status: {remaining} requests remaining, "
                f"resets at {reset_at}"
            )
