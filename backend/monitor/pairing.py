"""
pairing.py — Device Enrolment Payloads
=======================================

A unit is enrolled either from the QR code printed on its housing or from
an id typed in by hand. The QR code holds either JSON

    {"deviceId": "AQ-1001", "deviceKey": "…"}

or just the bare device id.
"""

import json
import logging

from . import config
from .errors import ValidationError
from .utils import iso_now, now_ms

logger = logging.getLogger("monitor.pairing")

# Not allowed in database keys
ILLEGAL_ID_CHARS = ".#$[]/"


def parse_qr_payload(payload: str) -> dict:
    """
    Extract device credentials from a scanned QR payload.

    Returns:
        {"deviceId": str, "deviceKey": str | None}

    Raises:
        ValidationError: Empty payload or JSON without a deviceId.
    """
    text = (payload or "").strip()
    if not text:
        raise ValidationError("Empty QR code")

    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("QR payload is not JSON, treating it as a bare device id")
        data = text

    if isinstance(data, dict):
        device_id = str(data.get("deviceId") or "").strip()
        if not device_id:
            raise ValidationError("This QR code does not contain valid device information.")
        return {"deviceId": device_id, "deviceKey": data.get("deviceKey")}

    if isinstance(data, (str, int)) and not isinstance(data, bool):
        return {"deviceId": str(data).strip(), "deviceKey": None}

    raise ValidationError("This QR code does not contain valid device information.")


def validate_manual_entry(device_id: str, name: str = "", location: str = "") -> dict:
    """
    Check a manually entered device.

    Returns:
        Field name -> error message; empty when everything is valid.
    """
    errors = {}
    device_id = (device_id or "").strip()
    if not device_id:
        errors["deviceId"] = "Device ID is required"
    elif len(device_id) < config.DEVICE_ID_MIN_LENGTH:
        errors["deviceId"] = (f"Device ID must be at least "
                              f"{config.DEVICE_ID_MIN_LENGTH} characters")
    elif len(device_id) > config.DEVICE_ID_MAX_LENGTH:
        errors["deviceId"] = (f"Device ID must be less than "
                              f"{config.DEVICE_ID_MAX_LENGTH} characters")
    elif any(ch in device_id for ch in ILLEGAL_ID_CHARS):
        errors["deviceId"] = "Device ID cannot contain . # $ [ ] or /"

    if len((name or "").strip()) > config.DEVICE_NAME_MAX_LENGTH:
        errors["deviceName"] = (f"Device name must be less than "
                                f"{config.DEVICE_NAME_MAX_LENGTH} characters")
    if len((location or "").strip()) > config.DEVICE_LOCATION_MAX_LENGTH:
        errors["deviceLocation"] = (f"Location must be less than "
                                    f"{config.DEVICE_LOCATION_MAX_LENGTH} characters")
    return errors


def build_device_record(uid: str, device_id: str, name: str = "",
                        location: str = "", device_key: str = None) -> dict:
    """Initial users/<uid>/devices/<id> record for a newly enrolled unit."""
    created = iso_now()
    return {
        "deviceId": device_id,
        "name": (name or "").strip() or config.DEFAULT_DEVICE_NAME,
        "location": (location or "").strip() or "Home",
        "deviceKey": device_key,
        "status": config.STATUS_OFFLINE,
        "valveStatus": "open",
        "batteryLevel": 100,
        "signalStrength": "Unknown",
        "totalUsage": 0,
        "lastSeen": created,
        "userId": uid,
        "addedAt": now_ms(),
        "createdAt": created,
        "updatedAt": created,
        "type": config.DEVICE_TYPE,
    }
