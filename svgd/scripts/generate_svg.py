#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Default render script: one line per series, SVG output.

Loaded by the renderer pool and executed once per worker. Uses matplotlib's
object-oriented API only (no pyplot state), so concurrent workers do not share
figures.
"""
import io
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.dates as mdates
from matplotlib.figure import Figure
from matplotlib.ticker import FuncFormatter

# Stable element ids so identical input renders to identical bytes
matplotlib.rcParams["svg.hashsalt"] = "svgd"
# Keep labels as <text> elements instead of glyph paths
matplotlib.rcParams["svg.fonttype"] = "none"

WIDTH_IN, HEIGHT_IN, DPI = 6.0, 4.0, 100
COLORS = ["#4e73df", "#1cc88a", "#e74a3b", "#36b9cc"]

# metricType -> (title, y label, percentage)
DEFAULTS = {
    "cpu_total": ("CPU Utilization", "Usage (%)", True),
    "cpu_process": ("CPU Utilization for %s", "CPU Time (s)", False),
    "ram_total": ("RAM Utilization", "Usage (%)", True),
    "ram_process": ("Memory Usage for %s", "Memory (MB)", False),
    "network": ("Network Traffic for %s", "Traffic (bytes/s)", False),
    "disk": ("Disk Operations for %s", "Operations/s", False),
    "postgresql_connections": ("PostgreSQL Connections", "Connections", False),
}


def _formatter(value_format):
    def fmt(value, _pos=None):
        try:
            return value_format % value
        except (TypeError, ValueError):
            return "%.1f" % value
    return fmt


def _time_format(span):
    if span > 86400 * 7:
        return "%m/%d"
    if span > 86400:
        return "%m/%d %H:%M"
    return "%H:%M:%S"


def _with_gaps(points):
    """x/y lists with None inserted where samples are more than two steps apart"""
    if len(points) < 2:
        return [datetime.fromtimestamp(p["timestamp"]) for p in points], [p["value"] for p in points]
    diffs = sorted(b["timestamp"] - a["timestamp"] for a, b in zip(points, points[1:]))
    step = diffs[len(diffs) // 2] or 1
    xs, ys = [], []
    prev = None
    for p in points:
        if prev is not None and p["timestamp"] - prev > 2 * step:
            xs.append(datetime.fromtimestamp(prev + step))
            ys.append(float("nan"))
        xs.append(datetime.fromtimestamp(p["timestamp"]))
        ys.append(p["value"])
        prev = p["timestamp"]
    return xs, ys


def _error_svg(message):
    fig = Figure(figsize=(WIDTH_IN, HEIGHT_IN), dpi=DPI)
    fig.text(0.5, 0.5, "Error: " + message, ha="center", va="center", color="red")
    return _to_svg(fig)


def _to_svg(fig):
    buf = io.BytesIO()
    fig.savefig(buf, format="svg", metadata={"Date": None})
    return buf.getvalue().decode("utf-8")


def generate_svg(series, options):
    if series is None or options is None:
        return _error_svg("Invalid input")
    series = [s for s in series if s.get("data")]
    if not series:
        return _error_svg("No data series")

    metric_type = options.get("metricType", "unknown")
    param = options.get("param1", "")
    title_tpl, y_label, is_pct = DEFAULTS.get(metric_type, ("Metric", "Value", False))
    title_tpl = options.get("title") or title_tpl
    title = title_tpl.replace("%s", param) if "%s" in title_tpl else title_tpl
    y_label = options.get("yLabel") or y_label
    is_pct = bool(options.get("isPercentage", is_pct))
    value_fmt = _formatter(options.get("valueFormat") or "%.1f")

    fig = Figure(figsize=(WIDTH_IN, HEIGHT_IN), dpi=DPI)
    ax = fig.add_subplot(111)
    ax.set_facecolor("#f8f9fc")
    ax.grid(True, color="#eeeeee", linewidth=0.8)

    all_ts = [p["timestamp"] for s in series for p in s["data"]]
    all_vals = [p["value"] for s in series for p in s["data"]]
    for index, s in enumerate(series):
        xs, ys = _with_gaps(s["data"])
        last = s["data"][-1]
        label = "%s: %s" % (s["name"], value_fmt(last["value"]))
        ax.plot(xs, ys, color=COLORS[index % len(COLORS)], linewidth=1.5, label=label)

    if is_pct:
        ax.set_ylim(0, 100)
    else:
        lo, hi = min(all_vals), max(all_vals)
        if hi == lo:
            hi = lo + 1
        elif hi - lo < 0.1:
            hi += (hi - lo) * 0.1
        ax.set_ylim(lo, hi)

    span = max(all_ts) - min(all_ts)
    ax.xaxis.set_major_formatter(mdates.DateFormatter(_time_format(span)))
    ax.yaxis.set_major_formatter(FuncFormatter(value_fmt))
    ax.tick_params(labelsize=7)
    ax.set_title(title, fontsize=11)
    ax.set_ylabel(y_label, fontsize=8)
    ax.legend(loc="upper center", bbox_to_anchor=(0.5, -0.12), ncol=min(len(series), 3), fontsize=7, frameon=False)
    fig.subplots_adjust(left=0.12, right=0.97, top=0.9, bottom=0.22)
    return _to_svg(fig)
