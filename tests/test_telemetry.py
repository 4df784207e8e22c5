"""Tests for device record normalization."""

from backend.monitor.telemetry import (
    device_name,
    device_status,
    normalize_device_data,
    normalize_history_entry,
    signal_strength,
    valve_status,
)

NOW = 1_710_518_400_000


def test_normalize_device_data_coerces_types():
    data = normalize_device_data("AQ-1", {
        "flowRate": "2.5", "totalLitres": 100, "valveState": "CLOSED",
        "batteryPercentage": "55", "timestamp": NOW,
    })
    assert data["deviceId"] == "AQ-1"
    assert data["flowRate"] == 2.5
    assert data["batteryPercentage"] == 55.0
    assert data["status"] == "offline"
    assert data["alertFlag"] is False
    assert data["rssi"] is None


def test_normalize_device_data_missing_node():
    assert normalize_device_data("AQ-1", None) is None
    assert normalize_device_data("AQ-1", {}) is None


def test_device_status_marks_stale_heartbeat_offline():
    fresh = {"status": "online", "lastSeen": NOW - 60_000}
    stale = {"status": "online", "lastSeen": NOW - 10 * 60_000}
    assert device_status(fresh, NOW) == "online"
    assert device_status(stale, NOW) == "offline"
    assert device_status({"status": "online"}, NOW) == "online"
    assert device_status(None, NOW) == "offline"


def test_device_status_accepts_iso_last_seen():
    info = {"status": "online", "lastSeen": "2024-03-15T15:59:00Z"}
    assert device_status(info, NOW) == "online"


def test_name_signal_and_valve_helpers():
    assert device_name({"deviceName": "Garden"}) == "Garden"
    assert device_name({"name": "Kitchen", "deviceName": "x"}) == "Kitchen"
    assert device_name(None) == "Water Monitor"
    assert signal_strength({"wifiInfo": {"rssi": -61}}) == -61
    assert signal_strength({}) == "unknown"
    assert valve_status("OPEN") == "open"
    assert valve_status("UNKNOWN") == "closed"


def test_history_entry_replaces_boot_relative_timestamps():
    entry = normalize_history_entry("k1", {"timestamp": 123456, "flowRate": 1,
                                           "recordedAt": NOW - 5000}, NOW)
    assert entry["timestamp"] == NOW - 5000
    assert entry["id"] == "k1"

    no_server_time = normalize_history_entry("k2", {"timestamp": 99}, NOW)
    assert no_server_time["timestamp"] == NOW

    epoch = normalize_history_entry("k3", {"timestamp": NOW - 1}, NOW)
    assert epoch["timestamp"] == NOW - 1
