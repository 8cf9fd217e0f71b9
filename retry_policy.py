"""Retry policy shared by LRS forwarding and the client tracking façade."""

import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, Type, TypeVar

logger = logging.getLogger("fwp.retry")

T = TypeVar('T')

class RetryError(Exception):
    """Base class for retry failures."""
    pass

class RetryExhaustedError(RetryError):
    """Raised when every attempt, including the fallback, has failed."""
    pass

class RetryableResult(RetryError):
    """Raised by an attempt to reject a result that should be retried (e.g. an empty body)."""
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call and how long to wait between tries.

    The wait before attempt ``n + 1`` is ``base_delay * backoff_factor ** (n - 1)``,
    capped at ``max_delay`` and spread by up to ``jitter`` (a fraction of the delay).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: float = 0.0
    timeout: Optional[float] = None
    exceptions: tuple[Type[Exception], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the failed ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    fallback: Optional[Callable[[], T]] = None,
    fallback_policy: Optional[RetryPolicy] = None,
    label: str = "call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` under ``policy``; when it is exhausted, run ``fallback`` the same way.

    Raises RetryExhaustedError chained to the last failure.
    """
    try:
        return _attempt(func, policy, label=label, sleep=sleep)
    except RetryExhaustedError:
        if fallback is None:
            raise
        logger.warning("%s: primary path exhausted, switching to fallback", label)
    return _attempt(fallback, fallback_policy or policy, label=f"{label} (fallback)", sleep=sleep)


def _attempt(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Callable[[float], None],
) -> T:
    last_exception: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func()
        except policy.exceptions as e:
            last_exception = e
            logger.warning(
                "%s failed (attempt %s/%s): %s", label, attempt, policy.max_attempts, e
            )
        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            logger.debug("%s: waiting %.3fs before attempt %s", label, delay, attempt + 1)
            sleep(delay)

    raise RetryExhaustedError(
        f"{label} failed after {policy.max_attempts} attempts"
    ) from last_exception


def with_retry(policy: RetryPolicy) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of :func:`call_with_retry`."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return call_with_retry(lambda: func(*args, **kwargs), policy, label=func.__name__)

        return wrapper
    return decorator
