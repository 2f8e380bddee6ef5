from __future__ import annotations

import logging
import os
from typing import Optional, Union

import coloredlogs

from .. import config as _cfg

ROOT_LOGGER = "kernelpipe"
_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LOGGER_CREATED: dict[str, logging.Logger] = {}


def _resolve_level(level_name: Optional[Union[str, int]]) -> int:
    if isinstance(level_name, int):
        return level_name
    if not level_name:
        return logging.INFO
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def _install_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        level = _resolve_level(os.environ.get("KERNELPIPE_LOG_LEVEL") or _cfg.get("KERNELPIPE_LOG_LEVEL"))
        root.setLevel(level)
        coloredlogs.install(level=level, logger=root, fmt=_FMT)
        root.propagate = False
    return root


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Logger for ``name``; loggers under ``kernelpipe.`` share one colored handler."""
    if name in _LOGGER_CREATED:
        return _LOGGER_CREATED[name]
    root = _install_root()
    # children keep NOTSET and propagate, so level and output come from the package logger
    logger = root if name == ROOT_LOGGER else logging.getLogger(name)
    _LOGGER_CREATED[name] = logger
    return logger


def set_level(level: Union[str, int]) -> int:
    """Change the level of the package logger and its handlers; returns the previous level."""
    root = _install_root()
    previous = root.level
    resolved = _resolve_level(level)
    root.setLevel(resolved)
    for h in root.handlers:
        h.setLevel(resolved)
    return previous
