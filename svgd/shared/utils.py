#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Utility Functions for svgd
Shared helpers for retries, deadlines and time arithmetic.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from .errors import RequestTimeout


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division for positive denominators"""
    return -(-numerator // denominator)


def align_down(timestamp: int, step: int) -> int:
    """Align a timestamp to the previous multiple of step"""
    if step <= 0:
        return timestamp
    return timestamp - (timestamp % step)


def as_bool(value: Any) -> bool:
    """Truthiness for config values; strings like "false" or "off" are False"""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class Deadline:
    """
    Per-request time budget

    A deadline of ``None`` seconds never expires.
    """

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + float(seconds)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def check(self, stage: str = "") -> None:
        """Raise RequestTimeout once the budget is spent"""
        if self.expired():
            where = f" during {stage}" if stage else ""
            raise RequestTimeout(f"Request deadline of {self.seconds}s exceeded{where}")

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp an I/O timeout so it never outlives the deadline"""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Fixed-backoff retry applied uniformly to backend calls

    Args:
        max_attempts: Maximum number of attempts (>= 1)
        backoff: Delay in seconds between attempts
        retryable: Exception types worth another attempt
    """
    max_attempts: int = 3
    backoff: float = 0.2
    retryable: Tuple[Type[BaseException], ...] = (OSError,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be non-negative")

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retryable)

    def call(
        self,
        func: Callable[[], Any],
        deadline: Optional[Deadline] = None,
        description: str = "call",
        sleep: Callable[[float], None] = time.sleep,
    ) -> Any:
        """
        Run func until it succeeds or attempts are exhausted

        Returns:
            Function result

        Raises:
            Last exception if all retries fail, immediately for non-retryable
            exceptions, RequestTimeout when the deadline runs out between attempts
        """
        log = logging.getLogger(__name__)
        for attempt in range(1, self.max_attempts + 1):
            if deadline is not None:
                deadline.check(description)
            try:
                return func()
            except Exception as e:
                if not self.is_retryable(e) or attempt >= self.max_attempts:
                    if attempt > 1:
                        log.error(f"{description}: giving up after {attempt} attempts: {e}")
                    raise
                delay = self.backoff
                if deadline is not None:
                    remaining = deadline.remaining()
                    if remaining is not None and remaining <= delay:
                        raise RequestTimeout(f"Request deadline exceeded while retrying {description}") from e
                log.warning(f"{description}: attempt {attempt} failed: {e}. Retrying in {delay:.2f}s...")
                sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
