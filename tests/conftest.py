#!/usr/bin/env python3
"""
Shared fakes and fixtures for the svgd test-suite

- FakeArchiveBackend: in-memory archive store standing in for direct file access
- FakeDaemon: scripted rrdcached stand-in recording connect/flush/fetch/close
- echo render script: returns its inputs as JSON wrapped in <svg> tags
"""
import json
import math
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from svgd.core.fetcher import RETRYABLE, SeriesFetcher
from svgd.core.handler import QueryHandler
from svgd.core.metrics import ServiceMetrics
from svgd.core.registry import MetricRegistry, build_definitions
from svgd.core.renderer import RendererPool
from svgd.core.settings import DEFAULT_METRICS
from svgd.shared.backends import ArchiveBackend
from svgd.shared.errors import ArchiveNotFoundError, BackendConnectionError
from svgd.shared.models import ArchiveInfo, ArchiveLevel, FetchResult, RawSeries
from svgd.shared.utils import RetryPolicy, ceil_div

NOW = 1_700_000_000
BASE = "/rrd"
MB = 1024 * 1024

ECHO_SCRIPT = '''
import json

def generate_svg(series, options):
    if options.get("metricType") == "boom":
        raise RuntimeError("boom")
    return "<svg>" + json.dumps({"series": series, "options": options}, sort_keys=True) + "</svg>"
'''


def synthetic_info(path: str, last_update: int = NOW) -> ArchiveInfo:
    """Archive with 10s (1 day), 60s (1 day) and 3600s (30 days) AVERAGE levels"""
    return ArchiveInfo(
        path=path,
        step=10,
        last_update=last_update,
        levels=(
            ArchiveLevel(index=0, cf="AVERAGE", pdp_per_row=1, rows=8640, base_step=10),
            ArchiveLevel(index=1, cf="AVERAGE", pdp_per_row=6, rows=1440, base_step=10),
            ArchiveLevel(index=2, cf="AVERAGE", pdp_per_row=360, rows=720, base_step=10),
        ),
    )


def decode_echo(payload: bytes) -> dict:
    text = payload.decode("utf-8")
    assert text.startswith("<svg>") and text.endswith("</svg>")
    return json.loads(text[len("<svg>"):-len("</svg>")])


Generator = Callable[[int], Optional[float]]


class FakeArchiveBackend(ArchiveBackend):
    """Serves generated rows for known archive paths, stamped like rrdtool rows"""

    name = "fake-direct"

    def __init__(self, archives: Optional[Dict[str, List[Tuple[str, Generator]]]] = None) -> None:
        self.archives = archives or {}
        self.infos: Dict[str, ArchiveInfo] = {}
        self.fetch_calls: List[Tuple[str, int, int, int]] = []
        self.info_calls: List[str] = []
        self.fetch_failures: List[Exception] = []

    def add(self, path: str, sources: List[Tuple[str, Generator]], info: Optional[ArchiveInfo] = None) -> None:
        self.archives[path] = sources
        self.infos[path] = info or synthetic_info(path)

    def info(self, path: str, deadline=None) -> ArchiveInfo:
        self.info_calls.append(path)
        if path not in self.archives:
            raise ArchiveNotFoundError(f"Archive not found: {path}")
        return self.infos[path]

    def fetch(self, path, start, end, step, cf="AVERAGE", deadline=None) -> FetchResult:
        self.fetch_calls.append((path, start, end, step))
        if self.fetch_failures:
            raise self.fetch_failures.pop(0)
        return self.generate(path, start, end, step)

    def generate(self, path, start, end, step) -> FetchResult:
        if path not in self.archives:
            raise ArchiveNotFoundError(f"Archive not found: {path}")
        n = ceil_div(end - start, step)
        # Rows stamped at the end of their interval, like rrdtool
        stamps = [start + (i + 1) * step for i in range(n)]
        series = [
            RawSeries(name=name, points=[(ts, gen(ts)) for ts in stamps])
            for name, gen in self.archives[path]
        ]
        return FetchResult(start=start, end=end, step=step, series=series)


class FakeDaemon(ArchiveBackend):
    """Scripted cache daemon; reads data from a FakeArchiveBackend"""

    name = "fake-daemon"

    def __init__(self, store: FakeArchiveBackend, connect_error: Optional[Exception] = None,
                 flush_error: Optional[Exception] = None, fetch_errors: Optional[List[Exception]] = None) -> None:
        self.store = store
        self.connect_error = connect_error
        self.flush_error = flush_error
        self.fetch_errors = list(fetch_errors or [])
        self.connects = 0
        self.flushes: List[str] = []
        self.info_calls: List[str] = []
        self.fetch_calls: List[Tuple[str, int, int, int]] = []
        self.closes = 0

    def connect(self, deadline=None) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error

    def flush(self, path, deadline=None) -> None:
        if self.flush_error is not None:
            raise self.flush_error
        self.flushes.append(path)

    def info(self, path, deadline=None) -> ArchiveInfo:
        self.info_calls.append(path)
        if path not in self.store.infos:
            raise ArchiveNotFoundError(f"rrdcached: No such file: {path}")
        return self.store.infos[path]

    def fetch(self, path, start, end, step, cf="AVERAGE", deadline=None) -> FetchResult:
        self.fetch_calls.append((path, start, end, step))
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return self.store.generate(path, start, end, step)

    def close(self) -> None:
        self.closes += 1


def constant(value: Optional[float]) -> Generator:
    return lambda ts: value


NO_WAIT = RetryPolicy(max_attempts=3, backoff=0.0, retryable=RETRYABLE)


@pytest.fixture
def store() -> FakeArchiveBackend:
    """Fake store preloaded with the archives the default catalogue points at"""
    backend = FakeArchiveBackend()
    backend.add(f"{BASE}/cpu-total/percent-active.rrd", [("value", lambda ts: 25.0 + (ts % 7))])
    backend.add(f"{BASE}/processes-nginx/ps_cputime.rrd", [("user", constant(3.0)), ("syst", constant(1.5))])
    backend.add(f"{BASE}/processes-postgres/ps_rss.rrd", [("value", constant(100.0 * MB))])
    backend.add(f"{BASE}/memory/percent-used.rrd", [("value", constant(math.nan))])
    return backend


@pytest.fixture
def registry() -> MetricRegistry:
    return MetricRegistry(build_definitions(DEFAULT_METRICS), base_path=BASE)


@pytest.fixture
def echo_script(tmp_path: Path) -> Path:
    path = tmp_path / "echo_render.py"
    path.write_text(ECHO_SCRIPT, encoding="utf-8")
    return path


@pytest.fixture
def make_handler(store, registry, echo_script):
    """Factory for QueryHandler wired to the fake store and the echo script"""

    def _make(daemon_factory=None, renderer=None, metrics=None, request_timeout=None,
              retry=NO_WAIT, on_fallback=None) -> QueryHandler:
        fetcher = SeriesFetcher(
            direct=store,
            retry=retry,
            daemon_factory=daemon_factory,
            on_fallback=on_fallback,
        )
        return QueryHandler(
            registry=registry,
            fetcher=fetcher,
            renderer=renderer or RendererPool(script_path=str(echo_script)),
            request_timeout=request_timeout,
            metrics=metrics,
            clock=lambda: NOW,
        )

    return _make


@pytest.fixture
def metrics() -> ServiceMetrics:
    return ServiceMetrics()


def refused() -> BackendConnectionError:
    return BackendConnectionError("connection refused")
