"""Logging for filebay.

Two loggers, each with its own size-rotated file under the log dir:

- ``filebay`` -> core.log: file operations, failures, maintenance runs.
- ``filebay.access`` -> access.log: one line per HTTP request, off by default.

Nothing in the file manager depends on logging succeeding; ``core_log``
swallows its own failures.

Environment:

    FILEBAY_LOG_CORE_ENABLE     0/1, default 1
    FILEBAY_LOG_CORE_LEVEL      DEBUG|INFO|WARNING|ERROR|CRITICAL, default INFO
    FILEBAY_LOG_ACCESS_ENABLE   0/1, default 0
    FILEBAY_LOG_ROTATE_MAX_MB   rotate threshold per file, default 2
    FILEBAY_LOG_ROTATE_BACKUPS  rotated files kept, default 3

The log directory itself comes from ``Settings.log_dir``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Dict


CORE_LOGGER_NAME = "filebay"
ACCESS_LOGGER_NAME = "filebay.access"

_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_OFF = logging.CRITICAL + 10

_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}

# Installed handlers keyed by logger name; empty until setup_logging runs.
_handlers: Dict[str, RotatingFileHandler] = {}


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    return default


def _env_positive(name: str, default: int) -> int:
    try:
        value = int((os.environ.get(name) or "").strip())
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class _Knobs:
    core_on: bool
    core_level: int
    rotate_bytes: int
    backups: int

    @classmethod
    def read(cls) -> "_Knobs":
        level_name = (os.environ.get("FILEBAY_LOG_CORE_LEVEL") or "INFO").strip().upper()
        if level_name == "WARN":
            level_name = "WARNING"
        level = logging.getLevelName(level_name)
        return cls(
            core_on=_env_bool("FILEBAY_LOG_CORE_ENABLE", True),
            core_level=level if isinstance(level, int) else logging.INFO,
            rotate_bytes=_env_positive("FILEBAY_LOG_ROTATE_MAX_MB", 2) * 1024 * 1024,
            backups=_env_positive("FILEBAY_LOG_ROTATE_BACKUPS", 3),
        )


def access_enabled() -> bool:
    return _env_bool("FILEBAY_LOG_ACCESS_ENABLE", False)


def core_logger() -> logging.Logger:
    return logging.getLogger(CORE_LOGGER_NAME)


def access_logger() -> logging.Logger:
    return logging.getLogger(ACCESS_LOGGER_NAME)


def _apply(knobs: _Knobs) -> None:
    for handler in _handlers.values():
        handler.maxBytes = knobs.rotate_bytes
        handler.backupCount = knobs.backups

    core = core_logger()
    handler = _handlers.get(CORE_LOGGER_NAME)
    if knobs.core_on:
        if handler is not None and handler not in core.handlers:
            core.addHandler(handler)
        core.disabled = False
        core.setLevel(knobs.core_level)
    else:
        if handler is not None and handler in core.handlers:
            core.removeHandler(handler)
        core.disabled = True
        core.setLevel(_OFF)

    # access.log is gated per request by access_enabled(), not by level.
    access_logger().setLevel(logging.INFO)


def setup_logging(log_dir: str) -> None:
    """Install the rotating handlers once; later calls only re-read the env."""
    knobs = _Knobs.read()
    if not _handlers:
        os.makedirs(log_dir, exist_ok=True)
        for name, filename in ((CORE_LOGGER_NAME, "core.log"), (ACCESS_LOGGER_NAME, "access.log")):
            handler = RotatingFileHandler(
                os.path.join(log_dir, filename),
                maxBytes=knobs.rotate_bytes,
                backupCount=knobs.backups,
                encoding="utf-8",
                delay=True,
            )
            handler.setFormatter(logging.Formatter(_FORMAT))
            logger = logging.getLogger(name)
            logger.propagate = False
            logger.addHandler(handler)
            _handlers[name] = handler
    _apply(knobs)


def core_log(level: str, msg: str, **extra) -> None:
    """Log ``msg | k=v, ...`` to core.log at ``level``; never raises."""
    try:
        if extra:
            msg = msg + " | " + ", ".join(f"{k}={v}" for k, v in extra.items())
        logger = core_logger()
        emit = getattr(logger, (level or "info").lower(), None)
        (emit if callable(emit) else logger.info)(msg)
    except Exception:
        pass
