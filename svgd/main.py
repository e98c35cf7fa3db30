#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
svgd main runner.
- Loads settings and builds the metric registry
- Serves chart queries over HTTP (plus /metrics and /healthz)
- Or answers a single query from the command line

Usage examples:
  python -m svgd.main --help
  python -m svgd.main --config /etc/svgd/svgd_config.yaml
  python -m svgd.main --query "endpoint=ram/process/postgres&period=7200" --out ram.svg
  python -m svgd.main --print-metrics
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .core.fetcher import RETRYABLE, SeriesFetcher
from .core.handler import QueryHandler
from .core.metrics import ServiceMetrics
from .core.registry import MetricRegistry
from .core.renderer import RendererPool
from .core.resolution import ResolutionSelector
from .core.server import ChartServer
from .core.settings import Settings, SettingsError, load_settings
from .shared.logging_setup import setup_logging
from .shared.utils import RetryPolicy

log = logging.getLogger(__name__)

# Example configuration shipped inside the package
DEFAULT_CONFIG = Path(__file__).resolve().parent / "config" / "svgd_config.yaml"


@dataclass
class Service:
    settings: Settings
    registry: MetricRegistry
    handler: QueryHandler
    metrics: ServiceMetrics
    server: ChartServer


def build_service(settings: Settings, metrics: Optional[ServiceMetrics] = None) -> Service:
    """Wire registry, fetcher, renderer and handler from settings (nothing is started)"""
    metrics = metrics or ServiceMetrics()
    registry = MetricRegistry(settings.metrics, base_path=settings.rrd.base_path)
    fetcher = SeriesFetcher(
        daemon_address=settings.rrd.rrdcached_addr,
        retry=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            backoff=settings.retry.backoff_s,
            retryable=RETRYABLE,
        ),
        daemon_timeout=settings.rrd.daemon_timeout_s,
        on_fallback=metrics.record_fallback,
    )
    renderer = RendererPool(
        script_path=settings.renderer.script_path,
        entry_point=settings.renderer.entry_point,
        on_context_created=metrics.set_render_contexts,
    )
    handler = QueryHandler(
        registry=registry,
        fetcher=fetcher,
        renderer=renderer,
        selector=ResolutionSelector(settings.resolution),
        request_timeout=settings.server.request_timeout_s or None,
        metrics=metrics,
    )
    server = ChartServer(handler, settings.server, settings.telemetry, metrics)
    return Service(settings=settings, registry=registry, handler=handler, metrics=metrics, server=server)


def _run_query(service: Service, params: str, out: Optional[str]) -> int:
    response = service.handler.handle_params(params)
    if not response.ok:
        print(response.payload.decode("utf-8"), file=sys.stderr)
        return 1
    if out:
        Path(out).write_bytes(response.payload)
        log.info(f"Wrote {len(response.payload)} bytes to {out}")
    else:
        sys.stdout.write(response.payload.decode("utf-8"))
    return 0


def main(
    config_path: Optional[str] = None,
    log_level: Optional[str] = None,
    port: Optional[int] = None,
    query: Optional[str] = None,
    out: Optional[str] = None,
    print_metrics: bool = False,
) -> int:
    # Provisional logging so settings errors are visible
    setup_logging(level=log_level or "INFO")
    try:
        settings = load_settings(str(config_path or DEFAULT_CONFIG))
    except SettingsError as e:
        log.error(str(e))
        return 2

    setup_logging(level=log_level or settings.logging.level, log_file=settings.logging.file)
    if port is not None:
        settings.server.tcp_port = port

    service = build_service(settings)

    if print_metrics:
        print(json.dumps(service.registry.describe(), indent=2))
        return 0

    if query:
        return _run_query(service, query, out)

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        log.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        service.server.start()
    except OSError as e:
        log.error(f"Cannot listen on {settings.server.listen_address}:{settings.server.tcp_port}: {e}")
        return 1
    stop.wait()
    service.server.stop()
    return 0


def cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='svgd: SVG chart service over RRD archives')
    parser.add_argument('--config', type=str, default=None, help='Path to svgd_config.yaml (JSON also accepted)')
    parser.add_argument('--log-level', type=str, default=None, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], help='Logging level (overrides config)')
    parser.add_argument('--port', type=int, default=None, help='TCP port (overrides config)')
    parser.add_argument('--query', type=str, default=None, help='Answer one query, e.g. "endpoint=cpu&period=3600", and exit')
    parser.add_argument('--out', type=str, default=None, help='With --query: write the SVG here instead of stdout')
    parser.add_argument('--print-metrics', action='store_true', help='Print the metric catalogue as JSON and exit')
    args = parser.parse_args(argv)
    return main(
        config_path=args.config,
        log_level=args.log_level,
        port=args.port,
        query=args.query,
        out=args.out,
        print_metrics=args.print_metrics,
    )


if __name__ == '__main__':
    sys.exit(cli())
