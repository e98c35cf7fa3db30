#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Renderer pool: per-worker execution contexts over a cached render script.

The render script is a Python file defining a fixed entry point

    generate_svg(series, options) -> str

where ``series`` is ``[{"name": str, "data": [{"timestamp": int, "value": float}]}]``
and ``options`` carries ``metricType`` plus the optional display keys
(``param1``, ``title``, ``yLabel``, ``isPercentage``, ``transformType``,
``valueMultiplier``, ``transformDivisor``, ``valueFormat``).

The script source is read and compiled once per process. Each worker thread
executes the compiled code into its own namespace on first use and keeps that
context for its lifetime; contexts are never handed to another thread.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from types import CodeType
from typing import Any, Callable, Dict, Optional

from ..shared.errors import RenderError
from ..shared.models import RenderRequest

log = logging.getLogger(__name__)

DEFAULT_ENTRY_POINT = "generate_svg"
DEFAULT_SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "generate_svg.py"


class ScriptCache:
    """Compiled render script, loaded lazily under a lock and immutable afterwards"""

    def __init__(self, path: str) -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        self._code: Optional[CodeType] = None
        self.loads = 0

    def get(self) -> CodeType:
        code = self._code
        if code is not None:
            return code
        with self._lock:
            if self._code is None:
                try:
                    source = Path(self.path).read_text(encoding="utf-8")
                except OSError as e:
                    raise RenderError(f"Cannot read render script {self.path}: {e}")
                try:
                    self._code = compile(source, self.path, "exec")
                except SyntaxError as e:
                    raise RenderError(f"Render script {self.path} does not compile: {e}")
                self.loads += 1
                log.info(f"Loaded render script {self.path}")
            return self._code


_caches: Dict[str, ScriptCache] = {}
_caches_lock = threading.Lock()


def get_script_cache(path: str) -> ScriptCache:
    """Process-wide cache per script path"""
    key = str(Path(path).resolve())
    with _caches_lock:
        cache = _caches.get(key)
        if cache is None:
            cache = _caches[key] = ScriptCache(key)
        return cache


class RenderContext:
    """One initialized script namespace, owned by a single worker thread"""

    def __init__(self, code: CodeType, entry_point: str = DEFAULT_ENTRY_POINT) -> None:
        self.entry_point = entry_point
        self.owner = threading.get_ident()
        self.renders = 0
        self.namespace: Dict[str, Any] = {"__name__": "svgd_render_script", "__file__": code.co_filename}
        try:
            exec(code, self.namespace)
        except Exception as e:
            raise RenderError(f"Render script failed to initialize: {type(e).__name__}: {e}")

    def render(self, request: RenderRequest) -> bytes:
        func = self.namespace.get(self.entry_point)
        if not callable(func):
            raise RenderError(f"Render script has no callable '{self.entry_point}'")
        series = [s.to_script() for s in request.series]
        options = request.to_options()
        try:
            result = func(series, options)
        except Exception as e:
            log.warning(f"Render script raised for {request.metric_type}: {type(e).__name__}: {e}")
            raise RenderError(f"Render script error: {type(e).__name__}: {e}")
        if not isinstance(result, str):
            raise RenderError(f"Render script returned {type(result).__name__}, expected str")
        self.renders += 1
        return result.encode("utf-8")


class RendererPool:
    """
    Hands each calling thread its own RenderContext

    Args:
        script_path: Render script file
        entry_point: Function name the script must define
        on_context_created: Optional callback receiving the new context count
    """

    def __init__(
        self,
        script_path: Optional[str] = None,
        entry_point: str = DEFAULT_ENTRY_POINT,
        on_context_created: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.script_path = str(script_path or DEFAULT_SCRIPT)
        self.entry_point = entry_point
        self.cache = get_script_cache(self.script_path)
        self._local = threading.local()
        self._count_lock = threading.Lock()
        self._contexts = 0
        self._on_context_created = on_context_created

    @property
    def context_count(self) -> int:
        return self._contexts

    def context(self) -> RenderContext:
        ctx = getattr(self._local, "context", None)
        if ctx is None:
            ctx = RenderContext(self.cache.get(), self.entry_point)
            self._local.context = ctx
            with self._count_lock:
                self._contexts += 1
                count = self._contexts
            log.debug(f"Created render context #{count} for thread {threading.current_thread().name}")
            if self._on_context_created is not None:
                self._on_context_created(count)
        return ctx

    def render(self, request: RenderRequest) -> bytes:
        """
        Render a chart with the calling thread's context

        Raises:
            RenderError: script missing/broken, entry point absent, bad result
        """
        return self.context().render(request)
