#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Service settings loader

Reads the YAML configuration (JSON is valid YAML, so legacy ``config.json``
files load too) into dataclasses, applies environment overrides and validates
everything at once.
"""
from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml

from .registry import MetricDefinition, build_definitions
from .resolution import ResolutionPolicy
from ..shared.utils import as_bool

log = logging.getLogger(__name__)

DEFAULT_BASE_PATH = "/opt/collectd/var/lib/collectd/rrd/localhost"

# Catalogue used when the file has no ``metrics`` section. The ``key`` names the
# legacy ``rrd.<key>`` option that may override the archive path.
DEFAULT_METRICS: List[Dict[str, Any]] = [
    {
        "key": "cpu_total",
        "endpoint": "cpu",
        "rrd_path": "cpu-total/percent-active.rrd",
        "title": "CPU Utilization",
        "y_label": "Usage (%)",
        "is_percentage": True,
        "metric_type": "cpu_total",
    },
    {
        "key": "cpu_process",
        "endpoint": "cpu/process",
        "rrd_path": "processes-%s/ps_cputime.rrd",
        "param_name": "process_name",
        "title": "CPU Utilization for %s",
        "y_label": "CPU Time (s)",
        "transform_type": "sum-fields",
        "metric_type": "cpu_process",
    },
    {
        "key": "ram_total",
        "endpoint": "ram",
        "rrd_path": "memory/percent-used.rrd",
        "title": "RAM Utilization",
        "y_label": "Usage (%)",
        "is_percentage": True,
        "metric_type": "ram_total",
    },
    {
        "key": "ram_process",
        "endpoint": "ram/process",
        "rrd_path": "processes-%s/ps_rss.rrd",
        "param_name": "process_name",
        "title": "Memory Usage for %s",
        "y_label": "Memory (MB)",
        "transform_type": "bytes_to_mb",
        "metric_type": "ram_process",
    },
    {
        "key": "network",
        "endpoint": "network",
        "rrd_path": "interface-%s/if_octets.rrd",
        "param_name": "interface",
        "title": "Network Traffic for %s",
        "y_label": "Traffic (bytes/s)",
        "metric_type": "network",
    },
    {
        "key": "disk",
        "endpoint": "disk",
        "rrd_path": "disk-%s/disk_ops.rrd",
        "param_name": "disk",
        "title": "Disk Operations for %s",
        "y_label": "Operations/s",
        "metric_type": "disk",
    },
    {
        "key": "postgresql_connections",
        "endpoint": "postgresql/connections",
        "rrd_path": "postgresql-iqchannels/pg_numbackends.rrd",
        "title": "PostgreSQL Connections",
        "y_label": "Connections",
        "value_format": "%.0f",
        "metric_type": "postgresql_connections",
    },
]


class SettingsError(Exception):
    pass


@dataclass
class ServerConfig:
    tcp_port: int = 8080
    listen_address: str = "0.0.0.0"
    allowed_ips: List[str] = field(default_factory=lambda: ["127.0.0.1"])
    workers: int = 4
    request_timeout_s: float = 30.0

    def allows(self, client_ip: str) -> bool:
        """True when client_ip matches an allowed address or network (``*`` allows all)"""
        if "*" in self.allowed_ips:
            return True
        try:
            addr = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        for entry in self.allowed_ips:
            try:
                if addr in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                continue
        return False


@dataclass
class ArchiveConfig:
    base_path: str = DEFAULT_BASE_PATH
    rrdcached_addr: Optional[str] = None
    daemon_timeout_s: float = 5.0


@dataclass
class RendererConfig:
    script_path: Optional[str] = None
    entry_point: str = "generate_svg"


@dataclass
class RetryConfig:
    max_attempts: int = 3
    backoff_s: float = 0.2


@dataclass
class TelemetryConfig:
    enabled: bool = True
    path: str = "/metrics"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class Settings:
    server: ServerConfig = field(default_factory=ServerConfig)
    rrd: ArchiveConfig = field(default_factory=ArchiveConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)
    resolution: ResolutionPolicy = field(default_factory=ResolutionPolicy)
    retry: RetryConfig = field(default_factory=RetryConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: List[MetricDefinition] = field(default_factory=list)
    config_path: Optional[str] = None


def _section(raw: Dict[str, Any], name: str, errors: List[str]) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{name} must be a mapping")
        return {}
    return value


def _int(section: Dict[str, Any], key: str, default: int, where: str, errors: List[str], minimum: int = 0) -> int:
    value = section.get(key, default)
    if value is None:
        return default
    try:
        if isinstance(value, bool):
            raise ValueError("boolean")
        result = int(value)
    except (TypeError, ValueError):
        errors.append(f"{where}.{key} must be an integer, got: {value!r}")
        return default
    if result < minimum:
        errors.append(f"{where}.{key} must be >= {minimum}, got: {result}")
    return result


def _float(section: Dict[str, Any], key: str, default: float, where: str, errors: List[str]) -> float:
    value = section.get(key, default)
    if value is None:
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        errors.append(f"{where}.{key} must be a number, got: {value!r}")
        return default
    if result < 0:
        errors.append(f"{where}.{key} must be >= 0, got: {result}")
    return result


def _str(section: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = section.get(key)
    if value is None:
        return default
    value = str(value).strip()
    return value or default


def _ip_list(value: Union[str, Sequence[str], None], errors: List[str]) -> List[str]:
    if value is None:
        return ["127.0.0.1"]
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",")]
    elif isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        errors.append(f"server.allowed_ips must be a string or list, got: {value!r}")
        return ["127.0.0.1"]
    items = [v for v in items if v]
    for item in items:
        if item == "*":
            continue
        try:
            ipaddress.ip_network(item, strict=False)
        except ValueError:
            errors.append(f"server.allowed_ips entry '{item}' is not an IP address or network")
    return items or ["127.0.0.1"]


def _default_metric_entries(rrd_raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    entries = []
    for entry in DEFAULT_METRICS:
        item = {k: v for k, v in entry.items() if k != "key"}
        legacy_path = rrd_raw.get(entry["key"])
        if isinstance(legacy_path, str) and legacy_path.strip():
            item["rrd_path"] = legacy_path.strip()
        entries.append(item)
    return entries


def _apply_env(raw: Dict[str, Any]) -> None:
    overrides = {
        "SVGD_LOG_LEVEL": ("logging", "level"),
        "SVGD_RRDCACHED_ADDR": ("rrd", "rrdcached_addr"),
        "SVGD_RRD_BASE_PATH": ("rrd", "base_path"),
        "SVGD_PORT": ("server", "tcp_port"),
    }
    for env_key, (section, key) in overrides.items():
        value = os.getenv(env_key)
        if value is None or not value.strip():
            continue
        target = raw.setdefault(section, {})
        if isinstance(target, dict):
            log.debug(f"{section}.{key} overridden by {env_key}")
            target[key] = value.strip()


def parse_settings(raw: Dict[str, Any], config_path: Optional[str] = None) -> Settings:
    """
    Build Settings from an already parsed mapping

    Raises:
        SettingsError: listing every invalid value found
    """
    if not isinstance(raw, dict):
        raise SettingsError(f"Configuration root must be a mapping ({config_path})")
    _apply_env(raw)
    errors: List[str] = []

    server_raw = _section(raw, "server", errors)
    server = ServerConfig(
        tcp_port=_int(server_raw, "tcp_port", 8080, "server", errors),
        listen_address=_str(server_raw, "listen_address", "0.0.0.0"),
        allowed_ips=_ip_list(server_raw.get("allowed_ips"), errors),
        workers=_int(server_raw, "workers", 4, "server", errors, minimum=1),
        request_timeout_s=_float(server_raw, "request_timeout_s", 30.0, "server", errors),
    )
    if not (0 <= server.tcp_port <= 65535):
        errors.append(f"server.tcp_port must be in [0,65535], got: {server.tcp_port}")

    rrd_raw = _section(raw, "rrd", errors)
    rrd = ArchiveConfig(
        base_path=_str(rrd_raw, "base_path", DEFAULT_BASE_PATH),
        rrdcached_addr=_str(rrd_raw, "rrdcached_addr"),
        daemon_timeout_s=_float(rrd_raw, "daemon_timeout_s", 5.0, "rrd", errors),
    )

    renderer_raw = _section(raw, "renderer", errors)
    legacy_js = _section(raw, "js", errors)
    renderer = RendererConfig(
        script_path=_str(renderer_raw, "script_path") or _str(legacy_js, "script_path"),
        entry_point=_str(renderer_raw, "entry_point", "generate_svg"),
    )
    if renderer.script_path and not Path(renderer.script_path).is_file():
        errors.append(f"renderer.script_path '{renderer.script_path}' does not exist")

    res_raw = _section(raw, "resolution", errors)
    defaults = ResolutionPolicy()
    resolution = defaults
    try:
        resolution = ResolutionPolicy(
            min_points=_int(res_raw, "min_points", defaults.min_points, "resolution", errors, minimum=1),
            max_points=_int(res_raw, "max_points", defaults.max_points, "resolution", errors, minimum=1),
            floor_step=_int(res_raw, "floor_step", defaults.floor_step, "resolution", errors, minimum=1),
            fallback_step=_int(res_raw, "fallback_step", defaults.fallback_step, "resolution", errors, minimum=1),
            default_window=_int(res_raw, "default_window", defaults.default_window, "resolution", errors, minimum=1),
            max_step=_int(res_raw, "max_step", defaults.max_step, "resolution", errors, minimum=1),
            validate_with_probe=as_bool(res_raw.get("validate_with_probe", defaults.validate_with_probe)),
        )
    except ValueError as e:
        errors.append(f"resolution: {e}")

    retry_raw = _section(raw, "retry", errors)
    retry = RetryConfig(
        max_attempts=_int(retry_raw, "max_attempts", 3, "retry", errors, minimum=1),
        backoff_s=_float(retry_raw, "backoff_s", 0.2, "retry", errors),
    )

    tel_raw = _section(raw, "telemetry", errors)
    telemetry = TelemetryConfig(
        enabled=as_bool(tel_raw.get("enabled", True)),
        path="/" + (_str(tel_raw, "path", "/metrics") or "/metrics").lstrip("/"),
    )

    log_raw = _section(raw, "logging", errors)
    logging_cfg = LoggingConfig(
        level=(_str(log_raw, "level", "INFO") or "INFO").upper(),
        file=_str(log_raw, "file"),
    )
    if logging_cfg.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"logging.level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL, got: {logging_cfg.level}")

    metrics_raw = raw.get("metrics")
    if metrics_raw is None:
        metrics = build_definitions(_default_metric_entries(rrd_raw))
    elif not isinstance(metrics_raw, list):
        errors.append("metrics must be a list")
        metrics = []
    else:
        metrics = build_definitions(metrics_raw)
        if metrics_raw and not metrics:
            errors.append("metrics: no usable metric entries")

    if errors:
        error_msg = f"Configuration validation failed ({config_path or '<inline>'}):\n" + "\n".join(f"  - {e}" for e in errors)
        raise SettingsError(error_msg)

    return Settings(
        server=server,
        rrd=rrd,
        renderer=renderer,
        resolution=resolution,
        retry=retry,
        telemetry=telemetry,
        logging=logging_cfg,
        metrics=metrics,
        config_path=config_path,
    )


def load_settings(config_path: Union[str, Path]) -> Settings:
    path = Path(config_path)
    if not path.exists():
        raise SettingsError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise SettingsError(f"Invalid YAML in {config_path}: {e}")

    settings = parse_settings(raw, str(path))
    log.info(
        f"Loaded {path}: {len(settings.metrics)} metrics, base_path={settings.rrd.base_path}, "
        f"rrdcached={settings.rrd.rrdcached_addr or 'off'}"
    )
    return settings
