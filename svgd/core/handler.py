#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Query handler: runs one chart query through the pipeline.

Received -> Resolved -> StepSelected -> Fetched -> Transformed -> Rendered
-> Responded, with Errored reachable from every step. The handler only moves
forward; retries live inside the components. The first failure becomes the
response.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional
from urllib.parse import parse_qs

from ..shared.errors import BadRequest, QueryError
from ..shared.models import RenderRequest
from ..shared.utils import Deadline
from .fetcher import SeriesFetcher
from .metrics import ServiceMetrics
from .registry import MetricRegistry
from .renderer import RendererPool
from .resolution import ResolutionSelector
from .transform import transform

log = logging.getLogger(__name__)

DEFAULT_PERIOD = 3600
CONFIG_QUERY = "_config/metrics"
SVG_CONTENT_TYPE = "image/svg+xml"
JSON_CONTENT_TYPE = "application/json"


class QueryState(str, Enum):
    RECEIVED = "received"
    RESOLVED = "resolved"
    STEP_SELECTED = "step_selected"
    FETCHED = "fetched"
    TRANSFORMED = "transformed"
    RENDERED = "rendered"
    RESPONDED = "responded"
    ERRORED = "errored"


@dataclass
class Query:
    endpoint: str
    period: int = DEFAULT_PERIOD
    param: Optional[str] = None

    @property
    def path(self) -> str:
        endpoint = self.endpoint.strip().strip("/")
        return f"{endpoint}/{self.param}" if self.param else endpoint

    @classmethod
    def from_params(cls, params: str) -> "Query":
        """
        Parse the textual request form ``endpoint=cpu/process/nginx&period=600``

        Raises:
            BadRequest: endpoint missing or period not a positive integer
        """
        if not params or not params.strip():
            raise BadRequest("No parameters provided")
        qs = parse_qs(params.strip().lstrip("?"), keep_blank_values=True)
        endpoint = (qs.get("endpoint", [""])[0] or "").strip()
        if not endpoint:
            raise BadRequest("Missing endpoint")
        period_raw = (qs.get("period", [""])[0] or "").strip()
        period = DEFAULT_PERIOD
        if period_raw:
            try:
                period = int(period_raw)
            except ValueError:
                raise BadRequest(f"Invalid period '{period_raw}'")
            if period <= 0:
                raise BadRequest(f"Period must be positive, got {period}")
        return cls(endpoint=endpoint, period=period)


@dataclass
class Response:
    status: int  # 0 success, 1 error
    payload: bytes
    content_type: str
    http_status: int = 200
    error_code: Optional[str] = None
    states: List[QueryState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == 0

    @classmethod
    def error(cls, exc: QueryError, states: Optional[List[QueryState]] = None) -> "Response":
        return cls(
            status=1,
            payload=json.dumps(exc.to_payload()).encode("utf-8"),
            content_type=JSON_CONTENT_TYPE,
            http_status=exc.http_status,
            error_code=exc.code,
            states=list(states or []),
        )


class QueryHandler:
    def __init__(
        self,
        registry: MetricRegistry,
        fetcher: SeriesFetcher,
        renderer: RendererPool,
        selector: Optional[ResolutionSelector] = None,
        request_timeout: Optional[float] = None,
        metrics: Optional[ServiceMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.fetcher = fetcher
        self.renderer = renderer
        self.selector = selector or ResolutionSelector()
        self.request_timeout = request_timeout
        self.metrics = metrics
        self.clock = clock

    @contextmanager
    def _timed(self, stage: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            if self.metrics is not None:
                self.metrics.observe_stage(stage, time.perf_counter() - started)

    def handle_params(self, params: str) -> Response:
        try:
            query = Query.from_params(params)
        except QueryError as e:
            log.info(f"Rejected request '{params}': {e.message}")
            if self.metrics is not None:
                self.metrics.observe_request("", e.code)
            return Response.error(e, [QueryState.RECEIVED, QueryState.ERRORED])
        return self.handle(query)

    def handle(self, query: Query) -> Response:
        """
        Run one query to completion; never raises

        Success carries the SVG bytes, failure a JSON ``{"error", "message"}``
        body with the error's HTTP status.
        """
        states: List[QueryState] = [QueryState.RECEIVED]
        trace: Dict[str, str] = {"metric": "", "outcome": "ok"}
        try:
            if query.path == CONFIG_QUERY:
                payload = json.dumps({"metrics": self.registry.describe()}).encode("utf-8")
                states.append(QueryState.RESPONDED)
                trace["metric"] = CONFIG_QUERY
                return Response(0, payload, JSON_CONTENT_TYPE, states=states)
            return self._run(query, states, trace)
        except QueryError as e:
            states.append(QueryState.ERRORED)
            trace["outcome"] = e.code
            log.info(f"Query {query.path} period={query.period} failed: {e.code}: {e.message}")
            return Response.error(e, states)
        except Exception as e:
            states.append(QueryState.ERRORED)
            trace["outcome"] = QueryError.code
            log.exception(f"Unexpected error handling {query.path}: {e}")
            return Response.error(QueryError("Internal error"), states)
        finally:
            if self.metrics is not None:
                self.metrics.observe_request(trace["metric"], trace["outcome"])

    def _run(self, query: Query, states: List[QueryState], trace: Dict[str, str]) -> Response:
        deadline = Deadline(self.request_timeout)

        definition, param = self.registry.resolve(query.path)
        trace["metric"] = definition.endpoint
        archive = self.registry.archive_path(definition, param)
        states.append(QueryState.RESOLVED)

        end = int(self.clock())
        start = end - int(query.period)
        with self.fetcher.session(archive, deadline) as session:
            with self._timed("select"):
                info = session.info()
                selection = self.selector.select(info, start, end, probe=session.count_valid)
            states.append(QueryState.STEP_SELECTED)

            deadline.check("fetch")
            with self._timed("fetch"):
                result = session.fetch(selection.start, selection.end, selection.step)
            states.append(QueryState.FETCHED)

        with self._timed("transform"):
            series = transform(result.series, definition)
        states.append(QueryState.TRANSFORMED)

        deadline.check("render")
        request = RenderRequest(
            series=series,
            metric_type=definition.metric_type,
            title=definition.display_title(param),
            y_label=definition.y_label,
            is_percentage=definition.is_percentage,
            value_format=definition.value_format,
            param=param,
            transform_type=definition.transform_type,
            value_multiplier=definition.value_multiplier,
            transform_divisor=definition.transform_divisor,
        )
        with self._timed("render"):
            chart = self.renderer.render(request)
        states.append(QueryState.RENDERED)

        log.info(
            f"Rendered {definition.endpoint}"
            f"{' (' + param + ')' if param else ''}: {len(series)} series, "
            f"step={selection.step}s ({selection.reason}), {len(chart)} bytes"
        )
        states.append(QueryState.RESPONDED)
        return Response(0, chart, SVG_CONTENT_TYPE, states=states)
