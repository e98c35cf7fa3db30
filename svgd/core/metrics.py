#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Service telemetry on a private prometheus_client registry.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


@dataclass
class MetricHandles:
    requests: Counter
    stage_seconds: Histogram
    backend_fallbacks: Counter
    render_contexts: Gauge


class ServiceMetrics:
    def __init__(self, prefix: str = "svgd_", registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.handles = MetricHandles(
            requests=Counter(
                f"{prefix}requests", "Chart queries by metric endpoint and outcome code",
                ["metric", "outcome"], registry=self.registry,
            ),
            stage_seconds=Histogram(
                f"{prefix}stage_seconds", "Time spent per pipeline stage",
                ["stage"], registry=self.registry,
                buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            ),
            backend_fallbacks=Counter(
                f"{prefix}backend_fallbacks", "Requests that fell back from rrdcached to direct access",
                registry=self.registry,
            ),
            render_contexts=Gauge(
                f"{prefix}render_contexts", "Initialized render contexts (one per worker thread)",
                registry=self.registry,
            ),
        )

    def observe_request(self, metric: str, outcome: str) -> None:
        self.handles.requests.labels(metric=metric or "-", outcome=outcome).inc()

    def observe_stage(self, stage: str, seconds: float) -> None:
        self.handles.stage_seconds.labels(stage=stage).observe(seconds)

    def record_fallback(self) -> None:
        self.handles.backend_fallbacks.inc()

    def set_render_contexts(self, count: int) -> None:
        self.handles.render_contexts.set(count)

    def payload(self) -> bytes:
        return generate_latest(self.registry)
