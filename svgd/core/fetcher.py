#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Series fetcher: dual-backend sample retrieval with retry and fallback.

Policy per request:
- With an rrdcached address configured, connect and FLUSH the archive, then
  read INFO and FETCH through the daemon.
- Connect or flush failure, or a daemon INFO or FETCH that exhausts its
  retries, falls back to direct file access for the rest of the request.
- An archive the daemon reports as missing ends the request with NoArchiveData.
- Every backend call goes through the RetryPolicy; missing archives are not
  retried.
- The daemon connection is closed on every exit path.

Fetched rows are conformed onto the grid ``start + i * step`` so callers always
get ``ceil((end - start) / step)`` points.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Tuple

import numpy as np

from ..shared.backends import ArchiveBackend, DirectBackend, RRDCachedBackend
from ..shared.errors import (
    ArchiveNotFoundError,
    BackendConnectionError,
    BackendError,
    BackendProtocolError,
    BackendUnavailable,
    NoArchiveData,
)
from ..shared.models import ArchiveInfo, FetchResult, RawSeries
from ..shared.utils import Deadline, RetryPolicy, align_down, ceil_div

RETRYABLE = (BackendConnectionError, BackendProtocolError, OSError)
DEFAULT_RETRY = RetryPolicy(max_attempts=3, backoff=0.2, retryable=RETRYABLE)


def conform(result: FetchResult, start: int, end: int, step: int) -> FetchResult:
    """
    Re-grid a backend result onto ``start + i * step`` for i < ceil((end-start)/step)

    Backend rows are stamped at the end of the interval they cover, so a row at
    ``t`` lands in the slot whose interval ``(start + i*step, start + (i+1)*step]``
    contains it. Rows falling in the same slot are averaged ignoring NaN; slots
    without any finite sample hold NaN.
    """
    n = max(0, ceil_div(end - start, step))
    grid = start + np.arange(n, dtype=np.int64) * step
    series: List[RawSeries] = []
    for raw in result.series:
        if raw.points:
            ts = np.fromiter((p[0] for p in raw.points), dtype=np.int64, count=len(raw.points))
            vals = np.array([np.nan if p[1] is None else p[1] for p in raw.points], dtype=float)
        else:
            ts = np.zeros(0, dtype=np.int64)
            vals = np.zeros(0, dtype=float)
        if len(ts) == n and n and result.step == step and int(ts[0]) == start + step:
            out = vals
        else:
            idx = (ts - start - 1) // step
            keep = (idx >= 0) & (idx < n) & np.isfinite(vals)
            sums = np.zeros(n, dtype=float)
            counts = np.zeros(n, dtype=float)
            np.add.at(sums, idx[keep], vals[keep])
            np.add.at(counts, idx[keep], 1.0)
            with np.errstate(invalid="ignore", divide="ignore"):
                out = np.where(counts > 0, sums / np.maximum(counts, 1.0), np.nan)
        series.append(RawSeries(
            name=raw.name,
            points=[(int(t), float(v)) for t, v in zip(grid, out)],
        ))
    return FetchResult(start=start, end=end, step=step, series=series)


class FetchSession:
    """
    Backend state for one request against one archive

    Created by SeriesFetcher.session(); holds the connected daemon, if any.
    """

    def __init__(
        self,
        fetcher: "SeriesFetcher",
        path: str,
        daemon: Optional[ArchiveBackend],
        deadline: Optional[Deadline],
    ) -> None:
        self.fetcher = fetcher
        self.path = path
        self.daemon = daemon
        self.deadline = deadline
        # The selector's trial fetch is usually the fetch the handler makes next
        self._last: Optional[Tuple[Tuple[int, int, int], FetchResult]] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def backend_name(self) -> str:
        return self.daemon.name if self.daemon is not None else self.fetcher.direct.name

    def _drop_daemon(self, reason: str) -> None:
        if self.daemon is None:
            return
        self.logger.warning(f"{self.path}: falling back to direct access: {reason}")
        try:
            self.daemon.close()
        finally:
            self.daemon = None
            if self.fetcher.on_fallback is not None:
                self.fetcher.on_fallback()

    def info(self) -> ArchiveInfo:
        """Archive metadata: from the daemon when connected, else from the direct store"""
        retry = self.fetcher.retry
        if self.daemon is not None:
            daemon = self.daemon

            def _info_via_daemon() -> ArchiveInfo:
                daemon.connect(self.deadline)
                return daemon.info(self.path, self.deadline)

            try:
                return retry.call(
                    _info_via_daemon,
                    deadline=self.deadline,
                    description=f"{daemon.name} info {self.path}",
                )
            except ArchiveNotFoundError as e:
                raise NoArchiveData(str(e))
            except BackendError as e:
                self._drop_daemon(f"daemon info failed: {e}")

        direct = self.fetcher.direct
        try:
            return retry.call(
                lambda: direct.info(self.path, self.deadline),
                deadline=self.deadline,
                description=f"{direct.name} info {self.path}",
            )
        except ArchiveNotFoundError as e:
            raise NoArchiveData(str(e))
        except BackendError as e:
            raise BackendUnavailable(f"Cannot read archive metadata for {self.path}: {e}")

    def fetch_raw(self, start: int, end: int, step: int) -> FetchResult:
        start = align_down(start, step)
        key = (start, end, step)
        if self._last is not None and self._last[0] == key:
            return self._last[1]
        result = self._fetch_uncached(start, end, step)
        self._last = (key, result)
        return result

    def _fetch_uncached(self, start: int, end: int, step: int) -> FetchResult:
        cf = self.fetcher.cf
        retry = self.fetcher.retry
        if self.daemon is not None:
            daemon = self.daemon

            def _via_daemon() -> FetchResult:
                daemon.connect(self.deadline)
                return daemon.fetch(self.path, start, end, step, cf, self.deadline)

            try:
                raw = retry.call(_via_daemon, deadline=self.deadline, description=f"{daemon.name} fetch {self.path}")
                return conform(raw, start, end, step)
            except ArchiveNotFoundError as e:
                raise NoArchiveData(str(e))
            except BackendError as e:
                self._drop_daemon(f"daemon fetch failed: {e}")

        direct = self.fetcher.direct
        try:
            raw = retry.call(
                lambda: direct.fetch(self.path, start, end, step, cf, self.deadline),
                deadline=self.deadline,
                description=f"{direct.name} fetch {self.path}",
            )
        except ArchiveNotFoundError as e:
            raise NoArchiveData(str(e))
        except BackendError as e:
            raise BackendUnavailable(f"All backends failed for {self.path}: {e}")
        return conform(raw, start, end, step)

    def fetch(self, start: int, end: int, step: int) -> FetchResult:
        """
        Fetch samples over [start, end) at step

        Raises:
            NoArchiveData: archive missing or nothing in range
            BackendUnavailable: every backend failed
        """
        result = self.fetch_raw(start, end, step)
        if not result.series or result.num_points == 0:
            raise NoArchiveData(f"No data in range for {self.path} (start={start}, end={end}, step={step})")
        self.logger.debug(
            f"{self.path}: {result.num_points} rows x {len(result.series)} ds at {step}s via {self.backend_name}"
        )
        return result

    def count_valid(self, step: int, start: int, end: int) -> int:
        """Trial fetch used by the resolution selector"""
        result = self.fetch_raw(start, end, step)
        valid = 0
        for s in result.series:
            vals = np.array([v for _, v in s.points], dtype=float)
            valid += int(np.count_nonzero(np.isfinite(vals) & (vals >= 0)))
        return valid


class SeriesFetcher:
    def __init__(
        self,
        direct: Optional[ArchiveBackend] = None,
        daemon_address: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        cf: str = "AVERAGE",
        daemon_timeout: float = 5.0,
        daemon_factory: Optional[Callable[[], ArchiveBackend]] = None,
        on_fallback: Optional[Callable[[], None]] = None,
    ) -> None:
        self.direct = direct if direct is not None else DirectBackend()
        self.daemon_address = (daemon_address or "").strip() or None
        self.retry = retry or DEFAULT_RETRY
        self.cf = cf
        self.on_fallback = on_fallback
        if daemon_factory is not None:
            self._daemon_factory: Optional[Callable[[], ArchiveBackend]] = daemon_factory
        elif self.daemon_address:
            address = self.daemon_address
            self._daemon_factory = lambda: RRDCachedBackend(address, timeout=daemon_timeout)
        else:
            self._daemon_factory = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def _open_daemon(self, path: str, deadline: Optional[Deadline]) -> Optional[ArchiveBackend]:
        if self._daemon_factory is None:
            return None
        daemon = self._daemon_factory()
        try:
            daemon.connect(deadline)
            daemon.flush(path, deadline)
        except BackendError as e:
            self.logger.warning(f"{path}: cache daemon unavailable, using direct access: {e}")
            daemon.close()
            if self.on_fallback is not None:
                self.on_fallback()
            return None
        return daemon

    @contextmanager
    def session(self, path: str, deadline: Optional[Deadline] = None) -> Iterator[FetchSession]:
        daemon = self._open_daemon(path, deadline)
        session = FetchSession(self, path, daemon, deadline)
        try:
            yield session
        finally:
            if session.daemon is not None:
                session.daemon.close()

    def fetch(
        self,
        path: str,
        start: int,
        step: int,
        end: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[RawSeries]:
        """One-shot fetch: open a session, read, release (end defaults to now)"""
        if end is None:
            end = int(time.time())
        with self.session(path, deadline) as session:
            return session.fetch(start, end, step).series
