#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logging configuration for svgd.

Console output goes to stderr through a formatter that colors the level name
(cyan DEBUG, green INFO, yellow WARNING, red ERROR, bold red CRITICAL) when
stderr is a terminal. An optional log file receives the same records uncolored.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DEFAULT_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s:%(module)s.%(funcName)s:%(lineno)d] - %(message)s'
DEFAULT_DATEFMT = '%Y-%m-%d %H:%M:%S'


class ColoredFormatter(logging.Formatter):
    """Formatter that adds ANSI colors to the level name."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[1;31m',
    }
    RESET = '\033[0m'

    def __init__(self, fmt: str = DEFAULT_FORMAT, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        if not (self.use_colors and record.levelname in self.COLORS):
            return super().format(record)
        orig_levelname = record.levelname
        record.levelname = f"{self.COLORS[orig_levelname]}{orig_levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = orig_levelname


def parse_level(level: Union[int, str, None]) -> int:
    """Accept logging constants or names like 'debug'; unknown names mean INFO"""
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    return getattr(logging, str(level).strip().upper(), logging.INFO)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    fmt: str = DEFAULT_FORMAT,
    datefmt: Optional[str] = DEFAULT_DATEFMT,
) -> None:
    """
    Configure the root logger: colored console handler plus optional file handler

    Args:
        level: Logging level (constant or name)
        log_file: Optional log file path; parent directories are created
        fmt: Format string for log messages
        datefmt: Format string for timestamps
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(fmt=fmt, datefmt=datefmt))
    root.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        root.addHandler(file_handler)

    root.setLevel(parse_level(level))
    # matplotlib is chatty at DEBUG (font cache scans)
    logging.getLogger('matplotlib').setLevel(max(logging.INFO, root.level))
