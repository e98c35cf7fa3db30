#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
HTTP front end for the chart service.

Routes:
- ``GET /?endpoint=cpu/process/nginx&period=600``: chart query
- ``GET /cpu/process/nginx?period=600``: same query in path form
- ``GET /healthz``: liveness JSON
- ``GET <telemetry.path>``: prometheus exposition (when telemetry is enabled)

Requests run on a bounded worker pool so the number of render contexts never
exceeds ``server.workers``.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional, Tuple
from urllib.parse import quote, unquote, urlparse

from prometheus_client import CONTENT_TYPE_LATEST

from .handler import JSON_CONTENT_TYPE, QueryHandler, Response
from .metrics import ServiceMetrics
from .settings import ServerConfig, TelemetryConfig

log = logging.getLogger(__name__)

HEALTH_PATH = "/healthz"


def to_request_params(path: str, query: str) -> str:
    """
    Normalize both request forms to ``endpoint=...&period=...``

    ``/cpu/process/nginx`` + ``period=600`` -> ``endpoint=cpu/process/nginx&period=600``
    ``/`` + ``endpoint=cpu&period=60`` -> unchanged
    """
    endpoint = unquote(path or "").strip("/")
    if not endpoint:
        return query or ""
    params = "endpoint=" + quote(endpoint, safe="/")
    return f"{params}&{query}" if query else params


class PooledHTTPServer(HTTPServer):
    """HTTPServer dispatching each accepted connection to a fixed-size thread pool"""

    request_queue_size = 64

    def __init__(self, address: Tuple[str, int], handler_cls, workers: int) -> None:
        super().__init__(address, handler_cls)
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="svgd-worker")

    def process_request(self, request, client_address) -> None:
        self.executor.submit(self._process, request, client_address)

    def _process(self, request, client_address) -> None:
        try:
            self.finish_request(request, client_address)
        except Exception:
            self.handle_error(request, client_address)
        finally:
            self.shutdown_request(request)

    def handle_error(self, request, client_address) -> None:
        log.exception(f"Unhandled error serving {client_address[0] if client_address else '?'}")

    def server_close(self) -> None:
        super().server_close()
        self.executor.shutdown(wait=True)


class ChartServer:
    def __init__(
        self,
        handler: QueryHandler,
        server: Optional[ServerConfig] = None,
        telemetry: Optional[TelemetryConfig] = None,
        metrics: Optional[ServiceMetrics] = None,
    ) -> None:
        self.handler = handler
        self.config = server or ServerConfig()
        self.telemetry = telemetry or TelemetryConfig()
        self.metrics = metrics
        self._httpd: Optional[PooledHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        if self._httpd is None:
            return self.config.listen_address, self.config.tcp_port
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def _build(self) -> PooledHTTPServer:
        outer_self = self
        metrics_path = self.telemetry.path if (self.telemetry.enabled and self.metrics is not None) else None

        class Handler(BaseHTTPRequestHandler):  # type: ignore
            server_version = "svgd"

            def log_message(self, format: str, *args) -> None:
                log.debug(f"{self.client_address[0]} - {format % args}")

            def _send(self_inner, status: int, content_type: str, body: bytes) -> None:
                self_inner.send_response(status)
                self_inner.send_header("Content-Type", content_type)
                self_inner.send_header("Content-Length", str(len(body)))
                self_inner.send_header("Access-Control-Allow-Origin", "*")
                self_inner.send_header("Cache-Control", "no-cache")
                self_inner.end_headers()
                self_inner.wfile.write(body)

            def _send_json(self_inner, status: int, payload: dict) -> None:
                self_inner._send(status, JSON_CONTENT_TYPE, json.dumps(payload).encode("utf-8"))

            def do_GET(self_inner):  # type: ignore
                client_ip = self_inner.client_address[0]
                if not outer_self.config.allows(client_ip):
                    log.warning(f"Rejected request from {client_ip}: not in allowed_ips")
                    self_inner._send_json(403, {"error": "forbidden", "message": "Client address not allowed"})
                    return
                try:
                    parsed = urlparse(self_inner.path)

                    if metrics_path is not None and parsed.path == metrics_path:
                        output = outer_self.metrics.payload()
                        self_inner._send(200, CONTENT_TYPE_LATEST, output)
                        return

                    if parsed.path == HEALTH_PATH:
                        self_inner._send_json(200, outer_self.health())
                        return

                    params = to_request_params(parsed.path, parsed.query)
                    response: Response = outer_self.handler.handle_params(params)
                    self_inner._send(response.http_status, response.content_type, response.payload)
                except (BrokenPipeError, ConnectionResetError) as e:
                    log.debug(f"Client {client_ip} went away: {e}")
                except Exception as e:
                    log.exception(f"HTTP handler error for {self_inner.path}: {e}")
                    try:
                        self_inner._send_json(500, {"error": "internal_error", "message": "Internal error"})
                    except OSError as send_err:
                        log.debug(f"Could not send error response to {client_ip}: {send_err}")

        return PooledHTTPServer(
            (self.config.listen_address, int(self.config.tcp_port)),
            Handler,
            workers=self.config.workers,
        )

    def health(self) -> dict:
        return {
            "status": "ok",
            "metrics": len(self.handler.registry),
            "render_contexts": self.handler.renderer.context_count,
        }

    def start(self) -> Tuple[str, int]:
        """Bind and serve in a background thread; returns the bound address"""
        if self._httpd is not None:
            return self.address
        self._httpd = self._build()
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True, name="svgd-http")
        self._thread.start()
        host, port = self.address
        log.info(f"Listening on {host}:{port} with {self.config.workers} workers")
        return host, port

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._httpd = None
        self._thread = None
        log.info("HTTP server stopped")
