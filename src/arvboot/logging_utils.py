#!/usr/bin/env python3
"""Logging setup shared by the CLI and the supervisor."""

from __future__ import annotations

import logging
import os
from typing import Optional

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
    "PANIC": logging.CRITICAL,
}


def resolve_log_level(log_level: Optional[str]) -> int:
    """Map a config level name to a logging level; ARVADOS_DEBUG forces DEBUG."""
    debug = os.getenv("ARVADOS_DEBUG", "")
    if debug and debug != "0":
        return logging.DEBUG
    return LEVEL_MAP.get(str(log_level or "INFO").upper(), logging.INFO)


def configure_logging(log_level: Optional[str] = "INFO") -> None:
    """Configure the root logger. Only the CLI calls this."""
    level = resolve_log_level(log_level)
    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        force=True
    )
    logging.getLogger("arvboot").setLevel(level)
