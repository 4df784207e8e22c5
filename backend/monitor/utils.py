"""
utils.py — Shared Utility Functions and Logging Setup
======================================================

Common helpers used across the monitor modules.
"""

import logging
import time
from datetime import datetime, timezone

from . import config
from .errors import ValidationError


def setup_logging(level: str = None) -> None:
    """
    Configure structured logging for the monitor.

    Sets up a console handler with timestamp, logger name, level,
    and message. All monitor.* loggers inherit this configuration.

    Args:
        level: Log level string (DEBUG/INFO/WARNING/ERROR/CRITICAL).
               Defaults to config.LOG_LEVEL.
    """
    level = level or config.LOG_LEVEL
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    monitor_logger = logging.getLogger("monitor")
    monitor_logger.setLevel(numeric_level)

    # Avoid duplicate handlers on repeated calls
    if not monitor_logger.handlers:
        monitor_logger.addHandler(handler)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def to_float(value, default: float = 0.0) -> float:
    """
    Coerce a telemetry value to float.

    Firmware writes numbers, but older units send strings and some fields
    are missing entirely. Anything that does not parse yields `default`.
    """
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_epoch_ms(value, fallback: int = None) -> int | None:
    """
    Convert a timestamp (epoch ms, ISO string, datetime) to epoch ms.

    Numbers are taken as milliseconds as-is; a boot-relative counter stays
    small so callers can compare it against config.EPOCH_MS_FLOOR.

    Args:
        value: Raw timestamp from the database.
        fallback: Returned when the value cannot be parsed.

    Returns:
        Epoch milliseconds, or `fallback`.
    """
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return fallback
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return fallback


def format_path(template: str, **kwargs) -> str:
    """Fill a database path template, rejecting empty path segments."""
    for key, value in kwargs.items():
        if value is None or str(value) == "":
            raise ValidationError(f"Empty path segment '{key}' for {template}")
        if any(ch in str(value) for ch in ".#$[]/"):
            raise ValidationError(f"Illegal character in path segment '{key}': {value}")
    return template.format(**kwargs)
