#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Domain Models for svgd
Defines the data structures passed between the pipeline stages.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

Sample = Tuple[int, float]


@dataclass(frozen=True)
class ArchiveLevel:
    """
    One consolidation level (RRA) of an archive

    The effective step is the number of primary data points merged per stored
    row times the archive base step.
    """
    index: int
    cf: str
    pdp_per_row: int
    rows: int
    base_step: int

    @property
    def step(self) -> int:
        return self.pdp_per_row * self.base_step

    @property
    def retention(self) -> int:
        """Seconds of history this level holds"""
        return self.step * self.rows

    def first_timestamp(self, last_update: int) -> Optional[int]:
        """Earliest retained row, computed the way `rrdtool first` does"""
        step = self.step
        if step <= 0 or self.rows <= 0 or last_update <= 0:
            return None
        return last_update - (last_update % step) - (self.rows - 1) * step


@dataclass(frozen=True)
class ArchiveInfo:
    """Archive metadata as needed by the resolution selector"""
    path: str
    step: int
    last_update: int
    levels: Tuple[ArchiveLevel, ...] = ()

    @classmethod
    def from_rrd_info(cls, path: str, info: Dict[str, Any]) -> "ArchiveInfo":
        """
        Build from the flat dictionary returned by `rrdtool.info()`

        Keys look like ``step``, ``last_update``, ``rra[0].cf``,
        ``rra[0].pdp_per_row`` and ``rra[0].rows``.
        """
        step = int(info.get("step") or 0)
        last_update = int(info.get("last_update") or 0)
        levels: List[ArchiveLevel] = []
        index = 0
        while f"rra[{index}].cf" in info:
            levels.append(ArchiveLevel(
                index=index,
                cf=str(info.get(f"rra[{index}].cf") or ""),
                pdp_per_row=int(info.get(f"rra[{index}].pdp_per_row") or 0),
                rows=int(info.get(f"rra[{index}].rows") or 0),
                base_step=step,
            ))
            index += 1
        return cls(path=path, step=step, last_update=last_update, levels=tuple(levels))


@dataclass
class RawSeries:
    """Samples for one data source exactly as returned by a backend"""
    name: str
    points: List[Tuple[int, Optional[float]]] = field(default_factory=list)


@dataclass
class FetchResult:
    """
    One fetch call: the grid the samples sit on and one RawSeries per data source

    Row ``i`` of every series is stamped ``start + i * step``.
    """
    start: int
    end: int
    step: int
    series: List[RawSeries] = field(default_factory=list)

    @property
    def num_points(self) -> int:
        return len(self.series[0].points) if self.series else 0


@dataclass
class NamedSeries:
    """
    Cleaned series handed to the renderer

    Timestamps strictly increase; values are finite and non-negative.
    """
    name: str
    points: List[Sample]

    def __post_init__(self):
        if not self.points:
            raise ValueError(f"Series '{self.name}' has no points")
        prev = None
        for ts, value in self.points:
            if prev is not None and ts <= prev:
                raise ValueError(f"Series '{self.name}' timestamps must strictly increase")
            if value is None or not math.isfinite(value) or value < 0:
                raise ValueError(f"Series '{self.name}' contains invalid value {value!r}")
            prev = ts

    def to_script(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data": [{"timestamp": ts, "value": value} for ts, value in self.points],
        }


@dataclass
class RenderRequest:
    """Series plus display metadata, consumed once by the renderer"""
    series: Sequence[NamedSeries]
    metric_type: str
    title: str = ""
    y_label: str = ""
    is_percentage: bool = False
    value_format: str = ""
    param: Optional[str] = None
    transform_type: str = "identity"
    value_multiplier: float = 1.0
    transform_divisor: float = 1.0

    def to_options(self) -> Dict[str, Any]:
        """Options object of the render script contract (camelCase keys)"""
        options: Dict[str, Any] = {"metricType": self.metric_type}
        if self.param:
            options["param1"] = self.param
        if self.title:
            options["title"] = self.title
        if self.y_label:
            options["yLabel"] = self.y_label
        options["isPercentage"] = bool(self.is_percentage)
        options["transformType"] = self.transform_type
        options["valueMultiplier"] = float(self.value_multiplier)
        options["transformDivisor"] = float(self.transform_divisor)
        if self.value_format:
            options["valueFormat"] = self.value_format
        return options
