#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Series cleaning and per-metric transforms.

Collected counters and gauges are non-negative, so NaN, infinite, missing and
negative samples are dropped. Timestamps of kept samples are left as fetched;
gaps are not re-interpolated.

Transform kinds:
- identity: one series per data source
- sum-fields: first two data sources summed into one 'total' series
- scale: value * multiplier / divisor
"""
from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from ..shared.errors import EmptyResult
from ..shared.models import NamedSeries, RawSeries
from .registry import (
    TRANSFORM_IDENTITY,
    TRANSFORM_SCALE,
    TRANSFORM_SUM_FIELDS,
    MetricDefinition,
)

log = logging.getLogger(__name__)

SUM_SERIES_NAME = "total"


def _arrays(raw: RawSeries) -> Tuple[np.ndarray, np.ndarray]:
    ts = np.array([p[0] for p in raw.points], dtype=np.int64)
    vals = np.array([np.nan if p[1] is None else p[1] for p in raw.points], dtype=float)
    return ts, vals


def _valid(vals: np.ndarray) -> np.ndarray:
    with np.errstate(invalid="ignore"):
        return np.isfinite(vals) & (vals >= 0)


def _to_named(name: str, ts: np.ndarray, vals: np.ndarray) -> NamedSeries:
    return NamedSeries(name=name, points=[(int(t), float(v)) for t, v in zip(ts, vals)])


def clean(raw: RawSeries) -> Tuple[np.ndarray, np.ndarray]:
    """Timestamps and values of the valid samples of raw"""
    ts, vals = _arrays(raw)
    mask = _valid(vals)
    return ts[mask], vals[mask]


def _sum_fields(raw_series: Sequence[RawSeries]) -> List[Tuple[str, np.ndarray, np.ndarray]]:
    if len(raw_series) == 1:
        ts, vals = clean(raw_series[0])
        return [(SUM_SERIES_NAME, ts, vals)]
    ts_a, a = _arrays(raw_series[0])
    ts_b, b = _arrays(raw_series[1])
    if len(ts_a) != len(ts_b) or not np.array_equal(ts_a, ts_b):
        # Align on the union of timestamps when the two sources disagree
        ts = np.union1d(ts_a, ts_b)
        a = _reindex(ts_a, a, ts)
        b = _reindex(ts_b, b, ts)
    else:
        ts = ts_a
    valid_a, valid_b = _valid(a), _valid(b)
    total = np.where(valid_a, a, 0.0) + np.where(valid_b, b, 0.0)
    keep = valid_a | valid_b
    return [(SUM_SERIES_NAME, ts[keep], total[keep])]


def _reindex(ts: np.ndarray, vals: np.ndarray, target: np.ndarray) -> np.ndarray:
    out = np.full(len(target), np.nan)
    out[np.searchsorted(target, ts)] = vals
    return out


def transform(raw_series: Sequence[RawSeries], metric: MetricDefinition) -> List[NamedSeries]:
    """
    Clean and transform fetched series for one metric

    Raises:
        EmptyResult: no output series kept a single valid point
    """
    if metric.transform_type == TRANSFORM_SUM_FIELDS and raw_series:
        produced = _sum_fields(raw_series)
    else:
        produced = []
        for raw in raw_series:
            ts, vals = clean(raw)
            if metric.transform_type == TRANSFORM_SCALE:
                vals = vals * metric.value_multiplier / metric.transform_divisor
                finite = np.isfinite(vals)
                ts, vals = ts[finite], vals[finite]
            elif metric.transform_type != TRANSFORM_IDENTITY:
                raise ValueError(f"Unknown transform_type '{metric.transform_type}'")
            produced.append((raw.name, ts, vals))

    named = [_to_named(name, ts, vals) for name, ts, vals in produced if len(ts) > 0]
    if not named:
        raise EmptyResult(f"No valid samples for '{metric.endpoint}' after cleaning")
    dropped = len(produced) - len(named)
    if dropped:
        log.debug(f"{metric.endpoint}: omitted {dropped} empty series")
    return named
