"""
telemetry.py — Device Record Normalization
===========================================

Devices write two nodes to the realtime database:

    devices/<id>/data  — live readings, rewritten every few seconds
        { flowRate, totalLitres, valveState, batteryPercentage,
          status, rssi, alertFlag, timestamp }
    devices/<id>/info  — slow-changing metadata and heartbeat
        { name | deviceName, location, status, lastSeen,
          batteryPercentage, wifiInfo: { rssi } }

Firmware revisions disagree on types (numbers vs strings) and omit fields,
so everything downstream goes through these helpers instead of reading
raw dicts.
"""

from . import config
from .utils import now_ms, to_epoch_ms, to_float


def normalize_device_data(device_id: str, raw: dict | None) -> dict | None:
    """
    Normalize a devices/<id>/data snapshot.

    Args:
        device_id: Device the snapshot belongs to.
        raw: Snapshot value, or None when the node does not exist.

    Returns:
        Dict with standard keys, or None for a missing node.
    """
    if not raw:
        return None
    return {
        "deviceId": raw.get("deviceId") or device_id,
        "flowRate": to_float(raw.get("flowRate")),
        "totalLitres": to_float(raw.get("totalLitres")),
        "valveState": raw.get("valveState") or config.VALVE_UNKNOWN,
        "batteryPercentage": to_float(raw.get("batteryPercentage")),
        "status": raw.get("status") or config.STATUS_OFFLINE,
        "rssi": raw.get("rssi"),
        "alertFlag": bool(raw.get("alertFlag", False)),
        "timestamp": raw.get("timestamp") or now_ms(),
    }


def device_status(info: dict | None, now: int = None) -> str:
    """
    Effective status of a device from its info node.

    A device that still claims to be online but whose heartbeat is older
    than config.OFFLINE_AFTER_SECONDS is reported offline.

    Args:
        info: devices/<id>/info value.
        now: Current time in epoch ms (defaults to the wall clock).
    """
    if not info:
        return config.STATUS_OFFLINE
    status = info.get("status") or config.STATUS_OFFLINE
    last_seen = to_epoch_ms(info.get("lastSeen"))
    if last_seen is not None and status == config.STATUS_ONLINE:
        now = now if now is not None else now_ms()
        if last_seen < now - config.OFFLINE_AFTER_SECONDS * 1000:
            return config.STATUS_OFFLINE
    return status


def device_name(info: dict | None, default: str = config.DEFAULT_DEVICE_NAME) -> str:
    info = info or {}
    return info.get("name") or info.get("deviceName") or default


def signal_strength(info: dict | None):
    wifi = (info or {}).get("wifiInfo") or {}
    return wifi.get("rssi", "unknown")


def valve_status(valve_state: str) -> str:
    """Lower-case open/closed label used by device listings."""
    return "open" if valve_state == config.VALVE_OPEN else "closed"


def normalize_history_entry(key: str, raw: dict, now: int = None) -> dict:
    """
    Normalize one history/<id> record.

    ESP32 units without NTP write `millis()` since boot as the timestamp.
    Those values are below config.EPOCH_MS_FLOOR and are replaced with
    `recordedAt` (server time written by the ingest function) or `now`.
    """
    now = now if now is not None else now_ms()
    timestamp = to_epoch_ms(raw.get("timestamp"), fallback=now)
    if timestamp < config.EPOCH_MS_FLOOR:
        timestamp = to_epoch_ms(raw.get("recordedAt"), fallback=now)
    return {
        "id": key,
        "timestamp": timestamp,
        "flowRate": to_float(raw.get("flowRate")),
        "totalLitres": to_float(raw.get("totalLitres")),
        "valveState": raw.get("valveState") or config.VALVE_UNKNOWN,
        "batteryPercentage": to_float(raw.get("batteryPercentage")),
    }
