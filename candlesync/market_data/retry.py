"""Bounded retry state and request throttling for provider calls.

The retry state is explicit (attempt counter, backoff, optional deadline) so
that the same policy drives a blocking loop or any other execution model.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff settings for a single page fetch."""

    max_retries: int = 6
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    jitter_seconds: float = 0.0
    deadline_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_retries <= 0:
            raise ValueError("max_retries must be > 0")
        if self.initial_backoff_seconds < 0:
            raise ValueError("initial_backoff_seconds must be >= 0")
        if self.max_backoff_seconds < 0:
            raise ValueError("max_backoff_seconds must be >= 0")
        if self.initial_backoff_seconds > self.max_backoff_seconds:
            raise ValueError("initial_backoff_seconds must be <= max_backoff_seconds")
        if self.jitter_seconds < 0:
            raise ValueError("jitter_seconds must be >= 0")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be > 0")

    def start(self) -> "RetryState":
        deadline = None
        if self.deadline_seconds is not None:
            deadline = time.monotonic() + self.deadline_seconds
        return RetryState(policy=self, backoff=self.initial_backoff_seconds, deadline=deadline)


@dataclass
class RetryState:
    """Progress of one retried operation.

    `attempts` counts attempts made so far. `next_delay()` returns how long to
    sleep before the next attempt, or None once the ceiling (or deadline) is hit.
    """

    policy: RetryPolicy
    backoff: float
    deadline: Optional[float] = None
    attempts: int = 0

    def record_attempt(self) -> None:
        self.attempts += 1

    @property
    def exhausted(self) -> bool:
        if self.attempts >= self.policy.max_retries:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def next_delay(self, min_delay: float = 0.0) -> Optional[float]:
        if self.exhausted:
            return None
        jitter = random.uniform(0, self.policy.jitter_seconds) if self.policy.jitter_seconds > 0 else 0
        delay = max(self.backoff + jitter, min_delay)
        self.backoff = min(self.policy.max_backoff_seconds, self.backoff * 2)
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                return None
            delay = min(delay, remaining)
        return delay


@dataclass
class RequestThrottle:
    """Thread-safe token bucket shared by all workers of one run.

    Allows bursts up to `rate_per_second` requests, then refills steadily.
    """

    rate_per_second: float = 100.0
    _tokens: float = field(init=False)
    _last_update: float = field(init=False)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        if self.rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        self._tokens = float(self.rate_per_second)
        self._last_update = time.monotonic()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = time.monotonic()
                elapsed = now - self._last_update
                self._tokens = min(self.rate_per_second, self._tokens + elapsed * self.rate_per_second)
                self._last_update = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate_per_second
            time.sleep(wait)
