"""
analytics.py — Water Usage Analytics
=====================================

Turns a device's history records into usage charts for four periods:

    D — last 24 hours, 24 hourly bars
    W — last 7 days, one bar per weekday (Sun … Sat)
    M — last 30 days, one bar per day of the current month
    Y — last 12 months, one bar per calendar month

Devices report a cumulative counter (totalLitres), not per-interval volume.
Usage in a bucket is therefore the difference between the last and the
first counter reading that fell into it (never negative: a counter reset
shows up as 0, not as negative usage). Flow statistics are computed over
readings with non-zero flow only; an idle meter would otherwise drag the
average to zero.

A device that has only one reading (no history yet, current data only)
shows its whole counter in the current bucket.
"""

import logging

import numpy as np
import pandas as pd

from . import config
from .database import RealtimeDatabase
from .errors import ValidationError
from .telemetry import normalize_history_entry
from .utils import format_path, now_ms, to_float

logger = logging.getLogger("monitor.analytics")

PERIOD_DAY = "D"
PERIOD_WEEK = "W"
PERIOD_MONTH = "M"
PERIOD_YEAR = "Y"

# Window covered by each period, in hours
PERIOD_HOURS = {
    PERIOD_DAY: 24,
    PERIOD_WEEK: 7 * 24,
    PERIOD_MONTH: 30 * 24,
    PERIOD_YEAR: 365 * 24,
}

WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
HOUR_LABELS = {0: "12 AM", 6: "6 AM", 12: "12 PM", 18: "6 PM"}


def _check_period(period: str) -> None:
    if period not in PERIOD_HOURS:
        raise ValidationError(f"Unknown period '{period}' (expected D, W, M or Y)")


def _as_timestamp(now, tz: str) -> pd.Timestamp:
    """`now` as a Timestamp in `tz`; ints and floats are epoch ms."""
    try:
        if now is None:
            return pd.Timestamp.now(tz=tz)
        if isinstance(now, (int, float)) and not isinstance(now, bool):
            return pd.Timestamp(now, unit="ms", tz="UTC").tz_convert(tz)
        ts = pd.Timestamp(now)
        return ts.tz_localize(tz) if ts.tzinfo is None else ts.tz_convert(tz)
    except (KeyError, ValueError, TypeError) as e:
        # unknown zones raise ZoneInfoNotFoundError / UnknownTimeZoneError (KeyError)
        raise ValidationError(f"Unknown time zone '{tz}'") from e


def _date_label(period: str, now: pd.Timestamp) -> str:
    if period == PERIOD_DAY:
        return f"Today - {now:%b} {now.day}"
    if period == PERIOD_WEEK:
        return "This Week"
    if period == PERIOD_MONTH:
        return f"{now:%B %Y}"
    return str(now.year)


def _empty_chart(period: str, now: pd.Timestamp) -> list[dict]:
    if period == PERIOD_DAY:
        return [{"label": HOUR_LABELS.get(h, ""), "hour": h, "usage": 0.0}
                for h in range(24)]
    if period == PERIOD_WEEK:
        return [{"label": day, "usage": 0.0} for day in WEEKDAYS]
    if period == PERIOD_MONTH:
        return [{"label": str(d), "day": d, "usage": 0.0}
                for d in range(1, now.days_in_month + 1)]
    return [{"label": month, "usage": 0.0} for month in MONTHS]


def _numeric(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        return pd.Series(0.0, index=df.index)
    return pd.to_numeric(df[column], errors="coerce").fillna(0.0)


def _bucket_index(period: str, ts):
    """Chart position for timestamps (Series via .dt, or a single Timestamp)."""
    accessor = ts.dt if isinstance(ts, pd.Series) else ts
    if period == PERIOD_DAY:
        return accessor.hour
    if period == PERIOD_WEEK:
        # pandas counts Monday as 0; the chart starts on Sunday
        return (accessor.dayofweek + 1) % 7
    if period == PERIOD_MONTH:
        return accessor.day - 1
    return accessor.month - 1


def empty_period(period: str, now=None, tz: str = "UTC") -> dict:
    """Result for a period without any readings."""
    _check_period(period)
    now = _as_timestamp(now, tz)
    return {
        "date": _date_label(period, now),
        "total_usage": 0.0,
        "average_flow": 0.0,
        "peak_flow": 0.0,
        "duration": 0,
        "comparison": None,
        "chart_data": _empty_chart(period, now),
    }


def process_history(entries: list[dict], period: str, now=None,
                    tz: str = "UTC") -> dict:
    """
    Aggregate history records into a usage chart.

    Args:
        entries: Records with timestamp (epoch ms), totalLitres, flowRate.
        period: D, W, M or Y.
        now: Reference time (datetime / Timestamp); defaults to now.
        tz: Time zone buckets are computed in.

    Returns:
        Dict with date, total_usage, average_flow, peak_flow, duration
        (hours), comparison (always None) and chart_data.
    """
    _check_period(period)
    now = _as_timestamp(now, tz)
    if not entries:
        return empty_period(period, now, tz)

    df = pd.DataFrame(entries)
    df["ts"] = pd.to_datetime(pd.to_numeric(df["timestamp"], errors="coerce"),
                              unit="ms", utc=True).dt.tz_convert(tz)
    df = df.dropna(subset=["ts"]).sort_values("ts", kind="stable")
    if df.empty:
        return empty_period(period, now, tz)

    df["total"] = _numeric(df, "totalLitres")
    df["flow"] = _numeric(df, "flowRate")

    if len(df) > 1:
        total_usage = max(0.0, float(df["total"].iloc[-1] - df["total"].iloc[0]))
    else:
        total_usage = float(df["total"].iloc[0])
    single_record = len(df) == 1 and total_usage > 0

    chart = _empty_chart(period, now)
    df["bucket"] = _bucket_index(period, df["ts"])
    df = df[df["bucket"] < len(chart)]

    per_bucket = df.groupby("bucket")["total"].agg(["first", "last"])
    usage = (per_bucket["last"] - per_bucket["first"]).clip(lower=0)
    for bucket, value in usage.items():
        chart[int(bucket)]["usage"] = float(value)

    if single_record:
        current = int(_bucket_index(period, now))
        if current < len(chart):
            chart[current]["usage"] = total_usage

    flows = df.loc[df["flow"] != 0, "flow"].to_numpy()
    average_flow = float(np.mean(flows)) if flows.size else 0.0
    peak_flow = float(np.max(flows)) if flows.size else 0.0

    logger.debug(f"Processed {len(df)} records for period {period}: "
                 f"usage={total_usage:.1f} L avg={average_flow:.2f} "
                 f"peak={peak_flow:.2f}")

    return {
        "date": _date_label(period, now),
        "total_usage": total_usage,
        "average_flow": max(0.0, average_flow),
        "peak_flow": max(0.0, peak_flow),
        "duration": PERIOD_HOURS[period],
        "comparison": None,
        "chart_data": chart,
    }


def load_usage(database: RealtimeDatabase, device_id: str, period: str,
               now=None, tz: str = "UTC") -> dict:
    """
    Read a device's history and aggregate it for `period`.

    The whole history node is read and filtered here: boot-relative ESP32
    timestamps make server-side range queries unreliable. When nothing
    falls in the window, the device's current data is used instead.
    """
    _check_period(period)
    now = _as_timestamp(now, tz)
    end = int(now.timestamp() * 1000)
    start = end - PERIOD_HOURS[period] * 60 * 60 * 1000

    raw = database.get(format_path(config.HISTORY_PATH, device_id=device_id)) or {}
    if isinstance(raw, list):
        raw = {str(i): v for i, v in enumerate(raw) if v is not None}

    entries = [
        entry for entry in (normalize_history_entry(key, value, end)
                            for key, value in raw.items() if isinstance(value, dict))
        if start <= entry["timestamp"] <= end
    ]

    if not entries:
        current = database.get(format_path(config.DEVICE_DATA_PATH, device_id=device_id))
        if not current:
            logger.info(f"No usage data for device {device_id}")
            return empty_period(period, now, tz)
        logger.info(f"No history in range for {device_id}, using current data")
        entries = [{
            "timestamp": end,
            "flowRate": to_float(current.get("flowRate")),
            "totalLitres": to_float(current.get("totalLitres")),
        }]

    logger.info(f"Loaded {len(entries)} history records for device {device_id}")
    return process_history(entries, period, now, tz)


def usage_summary(entries: list[dict]) -> dict:
    """Totals over a list of daily analytics rows (analytics/<id>)."""
    if not entries:
        return {"days": 0, "total_usage": 0.0, "average_daily_usage": 0.0,
                "peak_flow": 0.0}
    df = pd.DataFrame(entries)
    usage = _numeric(df, "totalUsage")
    peak = _numeric(df, "peakFlow")
    return {
        "days": int(len(df)),
        "total_usage": float(usage.sum()),
        "average_daily_usage": float(usage.mean()),
        "peak_flow": float(peak.max()),
    }
