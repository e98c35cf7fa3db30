#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Archive backends for svgd
Read RRD archives either through the rrdcached daemon or directly from disk.

Both backends return FetchResult objects; the fetcher decides which one to use,
retries them and converts their errors into client-facing fetch errors.
"""
from __future__ import annotations

import logging
import math
import os
import socket
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from .errors import (
    ArchiveNotFoundError,
    BackendConnectionError,
    BackendNotInstalledError,
    BackendProtocolError,
)
from .models import ArchiveInfo, FetchResult, RawSeries
from .utils import Deadline


def _rrdtool():
    # Imported on first use: the binding links against librrd
    try:
        import rrdtool
    except ImportError as e:
        raise BackendNotInstalledError(f"rrdtool binding not installed (pip install svgd[rrd]): {e}")
    return rrdtool


def _to_float(value: Any) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


class ArchiveBackend(ABC):
    """Interface shared by the cache-daemon and direct-store backends"""

    name = "backend"

    def connect(self, deadline: Optional[Deadline] = None) -> None:
        """Open connection state; a no-op for stateless backends"""
        return None

    def flush(self, path: str, deadline: Optional[Deadline] = None) -> None:
        """Make buffered writes for path visible to readers"""
        return None

    @abstractmethod
    def info(self, path: str, deadline: Optional[Deadline] = None) -> ArchiveInfo:
        """Archive metadata: base step, last update and consolidation levels"""
        ...

    @abstractmethod
    def fetch(
        self,
        path: str,
        start: int,
        end: int,
        step: int,
        cf: str = "AVERAGE",
        deadline: Optional[Deadline] = None,
    ) -> FetchResult:
        ...

    def close(self) -> None:
        return None


class DirectBackend(ArchiveBackend):
    """
    Direct RRD file access through the rrdtool Python binding

    Always available as long as the archive directory is readable.
    """

    name = "direct"

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)

    def _require(self, path: str) -> None:
        if not os.path.isfile(path):
            raise ArchiveNotFoundError(f"Archive not found: {path}")

    def info(self, path: str, deadline: Optional[Deadline] = None) -> ArchiveInfo:
        self._require(path)
        rrdtool = _rrdtool()
        try:
            raw: Dict[str, Any] = rrdtool.info(path)
        except rrdtool.OperationalError as e:
            raise BackendProtocolError(f"rrdtool info failed for {path}: {e}")
        return ArchiveInfo.from_rrd_info(path, raw)

    def fetch(
        self,
        path: str,
        start: int,
        end: int,
        step: int,
        cf: str = "AVERAGE",
        deadline: Optional[Deadline] = None,
    ) -> FetchResult:
        self._require(path)
        rrdtool = _rrdtool()
        self.logger.debug(f"rrdtool fetch {path} {cf} start={start} end={end} resolution={step}")
        try:
            (f_start, f_end, f_step), ds_names, rows = rrdtool.fetch(
                path, cf,
                "--resolution", str(step),
                "--start", str(start),
                "--end", str(end),
            )
        except rrdtool.OperationalError as e:
            raise BackendProtocolError(f"rrdtool fetch failed for {path}: {e}")
        series = [RawSeries(name=str(n), points=[]) for n in ds_names]
        for i, row in enumerate(rows):
            # Rows are stamped at the end of their interval, as rrdtool prints them
            ts = int(f_start) + (i + 1) * int(f_step)
            for ds, value in enumerate(row):
                series[ds].points.append((ts, _to_float(value)))
        return FetchResult(start=int(f_start), end=int(f_end), step=int(f_step), series=series)


def parse_daemon_address(address: str) -> Tuple[int, Any]:
    """
    Parse an rrdcached address into (socket family, socket address)

    Accepted forms: ``unix:/path``, ``/path``, ``host``, ``host:port``,
    ``[v6addr]:port``.
    """
    addr = (address or "").strip()
    if not addr:
        raise ValueError("empty rrdcached address")
    if addr.startswith("unix:"):
        return socket.AF_UNIX, addr[len("unix:"):]
    if addr.startswith("/"):
        return socket.AF_UNIX, addr
    port = RRDCachedBackend.DEFAULT_PORT
    host = addr
    if addr.startswith("["):
        close = addr.find("]")
        if close < 0:
            raise ValueError(f"invalid rrdcached address '{address}'")
        host = addr[1:close]
        tail = addr[close + 1:]
        if tail.startswith(":"):
            port = int(tail[1:])
    elif addr.count(":") == 1:
        host, port_s = addr.split(":", 1)
        port = int(port_s)
    return socket.AF_INET, (host, port)


class RRDCachedBackend(ArchiveBackend):
    """
    rrdcached text-protocol client

    Every response starts with ``<status> <message>``; a negative status is an
    error, otherwise status is the number of lines that follow.
    """

    name = "rrdcached"
    DEFAULT_PORT = 42217

    def __init__(self, address: str, timeout: float = 5.0) -> None:
        self.address = address
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__name__)
        self._sock: Optional[socket.socket] = None
        self._reader = None

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self, deadline: Optional[Deadline] = None) -> None:
        if self._sock is not None:
            return
        timeout = deadline.bound(self.timeout) if deadline else self.timeout
        try:
            family, sockaddr = parse_daemon_address(self.address)
        except ValueError as e:
            raise BackendConnectionError(str(e))
        try:
            if family == socket.AF_UNIX:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(timeout)
                try:
                    sock.connect(sockaddr)
                except OSError:
                    sock.close()
                    raise
            else:
                sock = socket.create_connection(sockaddr, timeout=timeout)
        except OSError as e:
            raise BackendConnectionError(f"Failed to connect to rrdcached at {self.address}: {e}")
        self._sock = sock
        self._reader = sock.makefile("rb")
        self.logger.debug(f"Connected to rrdcached at {self.address}")

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.sendall(b"QUIT\n")
        except OSError as e:
            self.logger.debug(f"QUIT to rrdcached at {self.address} failed: {e}")
        try:
            if self._reader is not None:
                self._reader.close()
        finally:
            self._sock.close()
            self._sock = None
            self._reader = None
            self.logger.debug(f"Disconnected from rrdcached at {self.address}")

    def _readline(self) -> str:
        if self._reader is None:
            raise BackendConnectionError("not connected to rrdcached")
        raw = self._reader.readline()
        if not raw:
            raise BackendConnectionError("rrdcached closed the connection")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def _command(self, line: str, deadline: Optional[Deadline] = None) -> Tuple[str, List[str]]:
        if self._sock is None:
            raise BackendConnectionError("not connected to rrdcached")
        timeout = deadline.bound(self.timeout) if deadline else self.timeout
        try:
            self._sock.settimeout(timeout)
            self._sock.sendall(line.encode("utf-8") + b"\n")
            head = self._readline()
            status_s, _, message = head.partition(" ")
            try:
                status = int(status_s)
            except ValueError:
                raise BackendProtocolError(f"Malformed rrdcached response: {head!r}")
            if status < 0:
                if "no such file" in message.lower():
                    raise ArchiveNotFoundError(f"rrdcached: {message}")
                raise BackendProtocolError(f"rrdcached error: {message}")
            lines = [self._readline() for _ in range(status)]
        except (socket.timeout, OSError) as e:
            # The stream is out of sync after a partial exchange
            self.close()
            raise BackendConnectionError(f"rrdcached I/O error: {e}")
        return message, lines

    def flush(self, path: str, deadline: Optional[Deadline] = None) -> None:
        message, _ = self._command(f"FLUSH {path}", deadline)
        self.logger.debug(f"FLUSH {path}: {message}")

    def info(self, path: str, deadline: Optional[Deadline] = None) -> ArchiveInfo:
        _, lines = self._command(f"INFO {path}", deadline)
        return ArchiveInfo.from_rrd_info(path, parse_info_response(lines))

    def fetch(
        self,
        path: str,
        start: int,
        end: int,
        step: int,
        cf: str = "AVERAGE",
        deadline: Optional[Deadline] = None,
    ) -> FetchResult:
        _, lines = self._command(f"FETCH {path} {cf} {int(start)} {int(end)}", deadline)
        return parse_fetch_response(lines, requested_end=end)


def parse_fetch_response(lines: List[str], requested_end: int) -> FetchResult:
    """
    Parse the body of an rrdcached FETCH answer

    Header lines are ``Key: value`` (FlushVersion, Start, End, Step, DSCount,
    DSName); data lines are ``<timestamp>: <v1> <v2> ...``.
    """
    header: Dict[str, str] = {}
    data: List[Tuple[int, List[float]]] = []
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep:
            raise BackendProtocolError(f"Malformed FETCH line: {line!r}")
        key = key.strip()
        if key.isdigit():
            data.append((int(key), [_to_float(v) for v in value.split()]))
        else:
            header[key] = value.strip()
    try:
        f_start = int(header["Start"])
        f_step = int(header["Step"])
        names = header.get("DSName", "").split()
    except (KeyError, ValueError) as e:
        raise BackendProtocolError(f"FETCH response missing header field: {e}")
    if f_step <= 0:
        raise BackendProtocolError(f"FETCH response has invalid step {f_step}")
    if not names:
        count = int(header.get("DSCount", "0") or 0)
        names = [f"ds{i}" for i in range(count)]
    series = [RawSeries(name=n, points=[]) for n in names]
    for ts, values in data:
        for ds, s in enumerate(series):
            s.points.append((ts, values[ds] if ds < len(values) else math.nan))
    f_end = int(header.get("End") or (data[-1][0] if data else requested_end))
    return FetchResult(start=f_start, end=f_end, step=f_step, series=series)


# Value types of INFO lines: ``<key> <type> <value>``
_INFO_FLOAT, _INFO_COUNT, _INFO_STRING, _INFO_INT, _INFO_BLOB = range(5)


def parse_info_response(lines: List[str]) -> Dict[str, Any]:
    """
    Parse the body of an rrdcached INFO answer into the dictionary shape
    `rrdtool.info()` returns (``step``, ``last_update``, ``rra[0].cf``, ...)
    """
    info: Dict[str, Any] = {}
    for line in lines:
        parts = line.split(" ", 2)
        if len(parts) < 2:
            raise BackendProtocolError(f"Malformed INFO line: {line!r}")
        key = parts[0]
        value = parts[2] if len(parts) > 2 else ""
        try:
            kind = int(parts[1])
            if kind == _INFO_FLOAT:
                info[key] = _to_float(value)
            elif kind in (_INFO_COUNT, _INFO_INT, _INFO_BLOB):
                info[key] = int(value)
            else:
                info[key] = value
        except ValueError:
            raise BackendProtocolError(f"Malformed INFO line: {line!r}")
    return info
