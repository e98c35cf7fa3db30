#!/usr/bin/env python3
"""
Unit tests for shared helpers: RetryPolicy, Deadline, error payloads, logging setup
"""
import logging
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from svgd.shared.errors import (
    BackendConnectionError,
    EmptyResult,
    FetchError,
    NoArchiveData,
    QueryError,
    RequestTimeout,
)
from svgd.shared.logging_setup import ColoredFormatter, parse_level
from svgd.shared.utils import Deadline, RetryPolicy, align_down, as_bool, ceil_div


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRetryPolicy:
    def test_succeeds_after_transient_failures(self):
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise BackendConnectionError("reset")
            return "ok"

        policy = RetryPolicy(max_attempts=3, backoff=0.5, retryable=(BackendConnectionError,))
        assert policy.call(flaky, sleep=sleeps.append) == "ok"
        assert len(attempts) == 3
        assert sleeps == [0.5, 0.5]

    def test_gives_up_after_max_attempts(self, caplog):
        policy = RetryPolicy(max_attempts=2, backoff=0.0, retryable=(BackendConnectionError,))

        def always_fails():
            raise BackendConnectionError("down")

        with pytest.raises(BackendConnectionError):
            policy.call(always_fails, description="fetch x", sleep=lambda s: None)
        assert "giving up after 2 attempts" in caplog.text

    def test_non_retryable_raised_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=5, backoff=0.0).call(broken, sleep=lambda s: None)
        assert calls == [1]

    def test_deadline_stops_retrying(self):
        clock = FakeClock()
        deadline = Deadline(0.3, clock=clock)

        def fails():
            raise OSError("timeout")

        policy = RetryPolicy(max_attempts=5, backoff=0.5)
        with pytest.raises(RequestTimeout):
            policy.call(fails, deadline=deadline, sleep=lambda s: None)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(backoff=-1)


class TestDeadline:
    def test_unbounded(self):
        deadline = Deadline(None)
        assert deadline.remaining() is None
        assert not deadline.expired()
        assert deadline.bound(5.0) == 5.0

    def test_expiry(self):
        clock = FakeClock()
        deadline = Deadline(2.0, clock=clock)
        assert deadline.remaining() == 2.0
        assert deadline.bound(5.0) == 2.0
        clock.now += 2.5
        assert deadline.expired()
        with pytest.raises(RequestTimeout, match="during render"):
            deadline.check("render")


class TestArithmetic:
    def test_ceil_div(self):
        assert ceil_div(3600, 10) == 360
        assert ceil_div(3601, 10) == 361
        assert ceil_div(0, 10) == 0

    def test_align_down(self):
        assert align_down(1_700_000_005, 10) == 1_700_000_000
        assert align_down(17, 0) == 17


class TestErrors:
    def test_payload(self):
        assert NoArchiveData("gone").to_payload() == {"error": "no_archive_data", "message": "gone"}

    def test_hierarchy(self):
        assert issubclass(EmptyResult, FetchError)
        assert issubclass(FetchError, QueryError)
        assert not issubclass(BackendConnectionError, QueryError)

    def test_default_message(self):
        assert QueryError().message == "internal_error"


class TestLogging:
    def test_parse_level(self):
        assert parse_level("debug") == logging.DEBUG
        assert parse_level(logging.ERROR) == logging.ERROR
        assert parse_level(None) == logging.INFO

    def test_plain_formatter(self):
        formatter = ColoredFormatter(fmt="%(levelname)s %(message)s", use_colors=False)
        record = logging.LogRecord("svgd", logging.WARNING, __file__, 1, "careful", None, None)
        assert formatter.format(record) == "WARNING careful"


class TestAsBool:
    @pytest.mark.parametrize("value,expected", [
        ("false", False), ("False", False), ("off", False), ("0", False), ("", False),
        ("true", True), (" Yes ", True), ("on", True), (True, True), (0, False), (None, False),
    ])
    def test_values(self, value, expected):
        assert as_bool(value) is expected
