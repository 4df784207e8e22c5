"""Tests for device enrolment payloads."""

import pytest

from backend.monitor.errors import ValidationError
from backend.monitor.pairing import build_device_record, parse_qr_payload, validate_manual_entry


@pytest.mark.parametrize("payload, expected", [
    ('{"deviceId": "AQ-1001", "deviceKey": "k3y"}', {"deviceId": "AQ-1001", "deviceKey": "k3y"}),
    ('{"deviceId": " AQ-1001 "}', {"deviceId": "AQ-1001", "deviceKey": None}),
    ("  AQ-1001\n", {"deviceId": "AQ-1001", "deviceKey": None}),
    ("12345", {"deviceId": "12345", "deviceKey": None}),
])
def test_parse_qr_payload(payload, expected):
    assert parse_qr_payload(payload) == expected


@pytest.mark.parametrize("payload", ["", "   ", '{"deviceKey": "k"}', "[1, 2]", "true"])
def test_parse_qr_payload_rejects_invalid(payload):
    with pytest.raises(ValidationError):
        parse_qr_payload(payload)


def test_validate_manual_entry():
    assert validate_manual_entry("AQ-1001", "Kitchen", "Sink") == {}
    assert validate_manual_entry("")["deviceId"] == "Device ID is required"
    assert "deviceId" in validate_manual_entry("AQ")
    assert "deviceId" in validate_manual_entry("A" * 51)
    for bad in ("AQ.1001", "AQ#1", "AQ$1", "AQ[1]", "AQ/1"):
        assert "deviceId" in validate_manual_entry(bad)

    errors = validate_manual_entry("AQ-1001", "n" * 51, "l" * 101)
    assert set(errors) == {"deviceName", "deviceLocation"}


def test_build_device_record_defaults():
    record = build_device_record("user-1", "AQ-1001", "  ", "")

    assert record["name"] == "Water Monitor"
    assert record["location"] == "Home"
    assert record["userId"] == "user-1"
    assert record["status"] == "offline"
    assert record["deviceKey"] is None
    assert record["type"] == "Water Flow Sensor"
