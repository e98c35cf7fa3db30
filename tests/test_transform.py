#!/usr/bin/env python3
"""
Unit tests for series cleaning and transforms

Tests cover:
- Dropping NaN / None / negative / infinite samples
- sum-fields over two data sources (process CPU time)
- scale (bytes to MB)
- Empty results
"""
import math
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from svgd.core.registry import build_definition
from svgd.core.transform import SUM_SERIES_NAME, clean, transform
from svgd.shared.errors import EmptyResult
from svgd.shared.models import NamedSeries, RawSeries

T0 = 1_700_000_000


def raw(name, values, step=10):
    return RawSeries(name=name, points=[(T0 + i * step, v) for i, v in enumerate(values)])


IDENTITY = build_definition({"endpoint": "cpu", "rrd_path": "cpu.rrd"})
SUM = build_definition({"endpoint": "cpu/process", "rrd_path": "p-%s/ps_cputime.rrd", "transform_type": "sum-fields"})
TO_MB = build_definition({"endpoint": "ram/process", "rrd_path": "p-%s/ps_rss.rrd", "transform_type": "bytes_to_mb"})


class TestClean:
    def test_invalid_samples_dropped(self):
        ts, vals = clean(raw("v", [1.0, math.nan, None, -3.0, math.inf, 0.0, 2.5]))
        assert list(vals) == [1.0, 0.0, 2.5]
        assert list(ts) == [T0, T0 + 50, T0 + 60]

    def test_timestamps_not_reinterpolated(self):
        ts, _ = clean(raw("v", [1.0, None, None, 4.0]))
        assert list(ts) == [T0, T0 + 30]


class TestIdentity:
    def test_one_series_per_source(self):
        series = transform([raw("rx", [1.0, 2.0]), raw("tx", [3.0, math.nan])], IDENTITY)
        assert [s.name for s in series] == ["rx", "tx"]
        assert series[1].points == [(T0, 3.0)]

    def test_empty_source_omitted(self):
        series = transform([raw("rx", [1.0]), raw("tx", [math.nan, -1.0])], IDENTITY)
        assert [s.name for s in series] == ["rx"]

    def test_all_empty_is_empty_result(self):
        with pytest.raises(EmptyResult) as exc:
            transform([raw("v", [math.nan, None])], IDENTITY)
        assert exc.value.code == "empty_result"

    def test_no_sources_is_empty_result(self):
        with pytest.raises(EmptyResult):
            transform([], IDENTITY)


class TestSumFields:
    """Test the two-source sum used for process CPU time"""

    def test_rows_summed(self):
        series = transform([raw("user", [1.0, 2.0, 3.0]), raw("syst", [0.5, 0.5, 1.0])], SUM)
        assert len(series) == 1
        assert series[0].name == SUM_SERIES_NAME
        assert series[0].points == [(T0, 1.5), (T0 + 10, 2.5), (T0 + 20, 4.0)]

    def test_invalid_side_counts_as_zero(self):
        series = transform([raw("user", [1.0, math.nan, math.nan]), raw("syst", [0.5, 2.0, None])], SUM)
        # Third row has no valid source and is dropped
        assert series[0].points == [(T0, 1.5), (T0 + 10, 2.0)]

    def test_single_source_passes_through(self):
        series = transform([raw("value", [1.0, -1.0, 2.0])], SUM)
        assert series[0].name == SUM_SERIES_NAME
        assert series[0].points == [(T0, 1.0), (T0 + 20, 2.0)]

    def test_misaligned_timestamps(self):
        a = RawSeries("user", [(T0, 1.0), (T0 + 10, 1.0)])
        b = RawSeries("syst", [(T0 + 10, 2.0), (T0 + 20, 2.0)])
        series = transform([a, b], SUM)
        assert series[0].points == [(T0, 1.0), (T0 + 10, 3.0), (T0 + 20, 2.0)]

    def test_extra_sources_ignored(self):
        series = transform([raw("a", [1.0]), raw("b", [2.0]), raw("c", [100.0])], SUM)
        assert series[0].points == [(T0, 3.0)]


class TestScale:
    def test_bytes_to_mb(self):
        series = transform([raw("value", [104857600.0, 1048576.0])], TO_MB)
        assert series[0].points == [(T0, 100.0), (T0 + 10, 1.0)]

    def test_multiplier(self):
        metric = build_definition({
            "endpoint": "x", "rrd_path": "x.rrd", "transform_type": "scale", "value_multiplier": 8,
        })
        series = transform([raw("bits", [1.0, 2.0])], metric)
        assert [v for _, v in series[0].points] == [8.0, 16.0]


class TestNamedSeries:
    def test_rejects_unordered_timestamps(self):
        with pytest.raises(ValueError):
            NamedSeries("v", [(T0 + 10, 1.0), (T0, 1.0)])

    def test_rejects_negative(self):
        with pytest.raises(ValueError):
            NamedSeries("v", [(T0, -1.0)])

    def test_to_script(self):
        assert NamedSeries("v", [(T0, 1.0)]).to_script() == {"name": "v", "data": [{"timestamp": T0, "value": 1.0}]}
