#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Metric registry: maps logical endpoints to archive locations.

Metric entries come from the ``metrics`` list of the configuration file:

  - endpoint: cpu/process
    rrd_path: processes-%s/ps_cputime.rrd
    requires_param: true
    param_name: process_name
    title: CPU Utilization for %s
    y_label: CPU Time (s)
    transform_type: sum-fields

Notes:
- Entries missing endpoint or rrd_path are dropped with a warning.
- Duplicate endpoints keep the first entry (registry order is resolution order).
- The registry is frozen after construction and safe for concurrent reads.
"""
from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..shared.errors import InvalidParameter, MissingParameter, UnknownEndpoint
from ..shared.utils import as_bool

log = logging.getLogger(__name__)

PLACEHOLDER = "%s"

TRANSFORM_IDENTITY = "identity"
TRANSFORM_SUM_FIELDS = "sum-fields"
TRANSFORM_SCALE = "scale"
TRANSFORM_KINDS = (TRANSFORM_IDENTITY, TRANSFORM_SUM_FIELDS, TRANSFORM_SCALE)

# Vocabulary of older configuration files
_TRANSFORM_ALIASES = {
    "none": TRANSFORM_IDENTITY,
    "ps_cputime_sum": TRANSFORM_SUM_FIELDS,
    "sum_fields": TRANSFORM_SUM_FIELDS,
    "multiply": TRANSFORM_SCALE,
    "bytes_to_mb": TRANSFORM_SCALE,
}
BYTES_PER_MB = 1024.0 * 1024.0


class MetricConfigError(ValueError):
    """A single metric entry is unusable"""
    pass


class ParamTemplate:
    """
    A string that is either a fixed literal or takes exactly one parameter

    Used for archive paths (``processes-%s/ps_rss.rrd``) and chart titles
    (``Memory Usage for %s``).
    """

    __slots__ = ("template",)

    def __init__(self, template: str) -> None:
        if template.count(PLACEHOLDER) > 1:
            raise MetricConfigError(f"Template '{template}' has more than one '{PLACEHOLDER}' placeholder")
        self.template = template

    @property
    def parametrized(self) -> bool:
        return PLACEHOLDER in self.template

    def render(self, param: Optional[str] = None) -> str:
        if not self.parametrized:
            return self.template
        return self.template.replace(PLACEHOLDER, param or "")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ParamTemplate) and other.template == self.template

    def __hash__(self) -> int:
        return hash(self.template)

    def __repr__(self) -> str:
        return f"ParamTemplate({self.template!r})"


def _check_param(param: str) -> None:
    if "/" in param or "\\" in param or "\x00" in param or param in (".", ".."):
        raise InvalidParameter(f"Parameter '{param}' is not a valid archive name component")


@dataclass(frozen=True)
class MetricDefinition:
    endpoint: str
    rrd_path: ParamTemplate
    requires_param: bool = False
    param_name: str = ""
    title: ParamTemplate = field(default_factory=lambda: ParamTemplate(""))
    y_label: str = ""
    is_percentage: bool = False
    transform_type: str = TRANSFORM_IDENTITY
    value_multiplier: float = 1.0
    transform_divisor: float = 1.0
    value_format: str = "%.1f"
    metric_type: str = ""

    def archive_path(self, base_path: str, param: Optional[str] = None) -> str:
        """Absolute archive path for this metric, relative to base_path"""
        if self.rrd_path.parametrized:
            if not param:
                raise MissingParameter(f"Endpoint '{self.endpoint}' requires parameter '{self.param_name or 'param'}'")
            _check_param(param)
        relative = self.rrd_path.render(param)
        return posixpath.join(base_path, relative.lstrip("/")) if base_path else relative

    def display_title(self, param: Optional[str] = None) -> str:
        return self.title.render(param)

    def describe(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "requires_param": self.requires_param,
            "param_name": self.param_name,
            "title": self.title.template,
            "y_label": self.y_label,
            "is_percentage": self.is_percentage,
        }


def build_definition(raw: Mapping[str, Any]) -> MetricDefinition:
    """
    Build one MetricDefinition from a configuration mapping

    Raises:
        MetricConfigError: missing endpoint/rrd_path or invalid values
    """
    if not isinstance(raw, Mapping):
        raise MetricConfigError("metric entry must be a mapping")
    endpoint = str(raw.get("endpoint") or "").strip().strip("/")
    rrd_path = str(raw.get("rrd_path") or raw.get("archive") or "").strip()
    if not endpoint:
        raise MetricConfigError("metric entry is missing 'endpoint'")
    if not rrd_path:
        raise MetricConfigError(f"metric '{endpoint}' is missing 'rrd_path'")

    path_template = ParamTemplate(rrd_path)
    requires_param = as_bool(raw.get("requires_param", path_template.parametrized))
    if path_template.parametrized and not requires_param:
        raise MetricConfigError(f"metric '{endpoint}': rrd_path has a placeholder but requires_param is false")
    if requires_param and not path_template.parametrized:
        raise MetricConfigError(f"metric '{endpoint}': requires_param is true but rrd_path has no '{PLACEHOLDER}'")

    transform_raw = str(raw.get("transform_type") or TRANSFORM_IDENTITY).strip().lower()
    transform_type = _TRANSFORM_ALIASES.get(transform_raw, transform_raw)
    if transform_type not in TRANSFORM_KINDS:
        raise MetricConfigError(f"metric '{endpoint}': unknown transform_type '{transform_raw}'")

    try:
        multiplier = float(raw.get("value_multiplier", 1.0) if raw.get("value_multiplier") is not None else 1.0)
        default_divisor = BYTES_PER_MB if transform_raw == "bytes_to_mb" else 1.0
        divisor_raw = raw.get("transform_divisor")
        divisor = float(divisor_raw) if divisor_raw is not None else default_divisor
    except (TypeError, ValueError) as e:
        raise MetricConfigError(f"metric '{endpoint}': invalid multiplier/divisor: {e}")
    if multiplier <= 0 or divisor <= 0:
        raise MetricConfigError(f"metric '{endpoint}': value_multiplier and transform_divisor must be positive")

    return MetricDefinition(
        endpoint=endpoint,
        rrd_path=path_template,
        requires_param=requires_param,
        param_name=str(raw.get("param_name") or ("param" if requires_param else "")),
        title=ParamTemplate(str(raw.get("title") or "")),
        y_label=str(raw.get("y_label") or ""),
        is_percentage=as_bool(raw.get("is_percentage", False)),
        transform_type=transform_type,
        value_multiplier=multiplier,
        transform_divisor=divisor,
        value_format=str(raw.get("value_format") or "%.1f"),
        metric_type=str(raw.get("metric_type") or endpoint.replace("/", "_")),
    )


def build_definitions(entries: Iterable[Any]) -> List[MetricDefinition]:
    """Build definitions, dropping bad or duplicate entries with a warning"""
    definitions: List[MetricDefinition] = []
    seen = set()
    for position, raw in enumerate(entries or []):
        try:
            definition = build_definition(raw)
        except MetricConfigError as e:
            log.warning(f"Dropping metrics[{position}]: {e}")
            continue
        if definition.endpoint in seen:
            log.warning(f"Dropping metrics[{position}]: duplicate endpoint '{definition.endpoint}'")
            continue
        seen.add(definition.endpoint)
        definitions.append(definition)
    return definitions


class MetricRegistry:
    """
    Ordered, read-only collection of metric definitions

    Resolution is two-phase: exact endpoint match first, then a prefix scan
    over parametrized metrics in registry order.
    """

    def __init__(self, definitions: Sequence[MetricDefinition], base_path: str = "") -> None:
        self._definitions: Tuple[MetricDefinition, ...] = tuple(definitions)
        self._by_endpoint: Mapping[str, MetricDefinition] = MappingProxyType(
            {d.endpoint: d for d in reversed(self._definitions)}
        )
        self._parametrized: Tuple[MetricDefinition, ...] = tuple(d for d in self._definitions if d.requires_param)
        self.base_path = base_path

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[MetricDefinition]:
        return iter(self._definitions)

    @property
    def definitions(self) -> Tuple[MetricDefinition, ...]:
        return self._definitions

    def get(self, endpoint: str) -> Optional[MetricDefinition]:
        return self._by_endpoint.get(endpoint.strip("/"))

    def resolve(self, endpoint_path: str) -> Tuple[MetricDefinition, Optional[str]]:
        """
        Resolve a request path to (definition, extracted parameter)

        Raises:
            UnknownEndpoint: nothing matches
            MissingParameter: a parametrized metric matched without a parameter
        """
        path = (endpoint_path or "").strip().strip("/")
        if not path:
            raise UnknownEndpoint("Empty endpoint")

        exact = self._by_endpoint.get(path)
        if exact is not None:
            if exact.requires_param:
                raise MissingParameter(
                    f"Endpoint '{exact.endpoint}' requires parameter '{exact.param_name}'"
                )
            return exact, None

        for definition in self._parametrized:
            prefix = definition.endpoint
            if not path.startswith(prefix):
                continue
            rest = path[len(prefix):]
            if rest and not rest.startswith("/"):
                continue
            param = rest[1:]
            if not param:
                raise MissingParameter(
                    f"Endpoint '{definition.endpoint}' requires parameter '{definition.param_name}'"
                )
            return definition, param

        raise UnknownEndpoint(f"Unknown endpoint '{path}'")

    def archive_path(self, definition: MetricDefinition, param: Optional[str] = None) -> str:
        return definition.archive_path(self.base_path, param)

    def describe(self) -> List[Dict[str, Any]]:
        """Catalogue served for the _config/metrics query"""
        return [d.describe() for d in self._definitions]
