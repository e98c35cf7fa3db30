#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Resolution selection for archive fetches.

Picks the consolidation level whose step yields a point count inside a target
band for the requested window, much like a query planner picking the coarsest
index that still meets a precision budget:

1. Usable levels are the AVERAGE levels with a sane effective step.
2. The requested start is clamped to the earliest row of the finest level.
3. Preference: first level in band, else closest to the band from below,
   else the finest level above the band.
4. Fallbacks: finest level when the range fits the shortest retention, then the
   floor step. An optional probe downgrades to the floor step when the chosen
   step yields no valid samples.

Selection never raises and never returns a zero step.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional

from ..shared.models import ArchiveInfo, ArchiveLevel

log = logging.getLogger(__name__)

# probe(step, start, end) -> number of valid samples at that step
StepProbe = Callable[[int, int, int], int]


@dataclass(frozen=True)
class ResolutionPolicy:
    """Tunable thresholds of the selection algorithm"""
    min_points: int = 100
    max_points: int = 1000
    floor_step: int = 10
    fallback_step: int = 60
    default_window: int = 86400
    max_step: int = 1_000_000
    consolidation: str = "AVERAGE"
    validate_with_probe: bool = True

    def __post_init__(self):
        if self.min_points < 1 or self.max_points < self.min_points:
            raise ValueError("resolution band must satisfy 1 <= min_points <= max_points")
        if self.floor_step < 1 or self.fallback_step < 1:
            raise ValueError("floor_step and fallback_step must be >= 1")
        if self.default_window < 1:
            raise ValueError("default_window must be >= 1")


@dataclass(frozen=True)
class StepSelection:
    step: int
    start: int
    end: int
    reason: str
    level: Optional[ArchiveLevel] = None
    num_points: int = 0


class ResolutionSelector:
    def __init__(self, policy: Optional[ResolutionPolicy] = None) -> None:
        self.policy = policy or ResolutionPolicy()

    def usable_levels(self, archive: ArchiveInfo) -> List[ArchiveLevel]:
        """AVERAGE levels in archive order, minus corrupt metadata"""
        cf = self.policy.consolidation.upper()
        levels = []
        for level in archive.levels:
            if level.cf.upper() != cf:
                continue
            if level.step <= 0 or level.step > self.policy.max_step:
                log.debug(f"{archive.path}: ignoring rra[{level.index}] with step {level.step}s")
                continue
            levels.append(level)
        return levels

    def earliest_timestamp(self, archive: ArchiveInfo, levels: List[ArchiveLevel], window_end: int) -> int:
        finest = next((lv for lv in levels if lv.pdp_per_row == 1), None)
        if finest is not None:
            first = finest.first_timestamp(archive.last_update)
            if first is not None:
                return first
        return window_end - self.policy.default_window

    def select(
        self,
        archive: ArchiveInfo,
        window_start: int,
        window_end: int,
        probe: Optional[StepProbe] = None,
    ) -> StepSelection:
        policy = self.policy
        levels = self.usable_levels(archive)
        earliest = self.earliest_timestamp(archive, levels, window_end)
        start = max(window_start, earliest)
        span = window_end - start
        if span <= 0:
            log.debug(f"{archive.path}: empty range after clamping start to {earliest}")
            return StepSelection(policy.fallback_step, start, window_end, "empty-range")

        in_band: Optional[ArchiveLevel] = None
        under: Optional[ArchiveLevel] = None
        under_points = -1
        over: Optional[ArchiveLevel] = None
        for level in levels:
            if level.step < policy.floor_step:
                continue
            num_points = math.ceil(span / level.step)
            if policy.min_points <= num_points <= policy.max_points:
                in_band = level
                break
            if num_points < policy.min_points:
                if num_points > under_points:
                    under, under_points = level, num_points
            elif over is None or level.step < over.step:
                over = level

        chosen = in_band or under or over
        reason = "in-band" if in_band else ("under-band" if under else ("over-band" if over else ""))

        if chosen is None and levels:
            shortest = min(lv.retention for lv in levels)
            finest = next((lv for lv in levels if lv.pdp_per_row == 1), None)
            if finest is not None and span <= shortest:
                chosen, reason = finest, "finest-level"

        if chosen is None:
            selection = StepSelection(policy.floor_step, start, window_end, "floor")
        else:
            selection = StepSelection(chosen.step, start, window_end, reason, chosen, math.ceil(span / chosen.step))

        if probe is not None and policy.validate_with_probe and selection.step != policy.floor_step:
            selection = self._validate(archive, selection, probe)

        log.debug(
            f"{archive.path}: step={selection.step}s ({selection.reason}), "
            f"range={span}s, points={selection.num_points}"
        )
        return selection

    def _validate(self, archive: ArchiveInfo, selection: StepSelection, probe: StepProbe) -> StepSelection:
        try:
            valid = probe(selection.step, selection.start, selection.end)
        except Exception as e:
            log.warning(f"{archive.path}: trial fetch at {selection.step}s failed, keeping step: {e}")
            return selection
        if valid > 0:
            return selection
        floor = self.policy.floor_step
        log.info(f"{archive.path}: no valid samples at {selection.step}s, downgrading to {floor}s")
        return StepSelection(
            floor, selection.start, selection.end, "probe-downgrade",
            num_points=math.ceil((selection.end - selection.start) / floor),
        )

    def select_step(
        self,
        archive: ArchiveInfo,
        window_start: int,
        window_end: int,
        probe: Optional[StepProbe] = None,
    ) -> int:
        return self.select(archive, window_start, window_end, probe).step
