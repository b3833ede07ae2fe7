"""Rate limiting utilities for API calls."""

from __future__ import annotations

import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

from .. import metrics

_F = TypeVar("_F", bound=Callable[..., Any])


class RateLimiter:
    """Minimum-interval limiter shared by all worker threads.

    Callers reserve the next free slot under the lock and sleep outside of
    it, so concurrent callers are spaced by ``1 / rate`` seconds.
    """

    def __init__(self, rate_per_second: float, api_type: str) -> None:
        self.api_type = api_type
        self._lock = threading.Lock()
        self._next_slot = 0.0
        self.set_rate(rate_per_second)

    def set_rate(self, rate_per_second: float) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second

    def acquire(self) -> float:
        """Block until the caller may proceed. Returns the time slept."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        sleep_time = slot - now
        if sleep_time > 0:
            metrics.rate_limit_hits_total.labels(api_type=self.api_type).inc()
            time.sleep(sleep_time)
        return sleep_time

    def reset(self) -> None:
        with self._lock:
            self._next_slot = 0.0


k8s_limiter = RateLimiter(10.0, "k8s")
aws_limiter = RateLimiter(5.0, "aws")


def configure_rate_limits(k8s_per_second: float, aws_per_second: float) -> None:
    """Apply configured rates to the shared limiters."""
    k8s_limiter.set_rate(k8s_per_second)
    aws_limiter.set_rate(aws_per_second)


def rate_limit_k8s(func: _F) -> _F:
    """Decorator to rate limit Kubernetes API calls."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        k8s_limiter.acquire()
        return func(*args, **kwargs)

    return wrapper  # type: ignore


def rate_limit_aws(func: _F) -> _F:
    """Decorator to rate limit AWS API calls."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        aws_limiter.acquire()
        return func(*args, **kwargs)

    return wrapper  # type: ignore
