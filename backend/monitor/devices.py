"""
devices.py — Device Ownership, Commands and Reads
==================================================

Everything a user does with a device goes through DeviceService:

    Claiming     deviceOwners/<id> = <uid> marks exclusive ownership;
                 users/<uid>/claimedDevices/<id> = true lists it for the user.
    Commands     devices/<id>/commands/valveControl (bool) and
                 devices/<id>/commands/resetTotal (true), picked up by the
                 firmware on its next sync.
    Reads        current data / info, history and daily analytics.
    Listeners    device list, per-device info and per-device data streams,
                 tracked in a ListenerRegistry so they can be dropped per
                 device (on removal) or per user (on sign-out).

The database's security rules enforce ownership server-side; the checks
here give the user a clear error instead of a permission failure.
"""

import logging

from firebase_admin import exceptions

from . import config
from .database import RealtimeDatabase
from .errors import (
    DeviceNotFoundError,
    NotAuthenticatedError,
    OwnershipError,
    ValidationError,
)
from .listeners import ListenerRegistry, listener_key
from .session import Session
from .telemetry import (
    device_name,
    normalize_device_data,
    normalize_history_entry,
    signal_strength,
)
from .utils import format_path, iso_now, now_ms, to_float

logger = logging.getLogger("monitor.devices")


def _permission_denied(error) -> bool:
    if isinstance(error, exceptions.PermissionDeniedError):
        return True
    return "permission_denied" in str(error).lower()


class DeviceService:
    """
    Device operations on behalf of the signed-in user.

    Attributes:
        database (RealtimeDatabase): Database adapter.
        session (Session): Signed-in user.
        listeners (ListenerRegistry): Live device listeners.
    """

    def __init__(self, database: RealtimeDatabase, session: Session):
        self.database = database
        self.session = session
        self.listeners = ListenerRegistry("device")
        session.on_change(self._on_user_change)

    def _on_user_change(self, previous, user) -> None:
        if previous is not None:
            self.cleanup_user_listeners(previous.uid)

    # ── Listener housekeeping ─────────────────────────────────────

    def cleanup_all_listeners(self) -> int:
        return self.listeners.cleanup_all()

    def cleanup_user_listeners(self, uid: str) -> int:
        return self.listeners.cleanup_user(uid)

    def active_listeners(self) -> list[dict]:
        return self.listeners.active()

    def listener_status(self) -> dict:
        return self.listeners.status()

    # ── Ownership ─────────────────────────────────────────────────

    def _owner_path(self, device_id: str) -> str:
        return format_path(config.DEVICE_OWNER_PATH, device_id=device_id)

    def claim_device_ownership(self, uid: str, device_id: str) -> dict:
        """
        Atomically claim a device for `uid`.

        Returns:
            {"device_id": ..., "already_owned": bool}

        Raises:
            OwnershipError: The device belongs to another user.
        """
        if not uid or not device_id:
            raise ValidationError("User ID and device ID are required")

        seen = {}

        def claim(current):
            seen["owner"] = current
            return uid if current is None else current

        owner = self.database.transaction(self._owner_path(device_id), claim)
        if owner != uid:
            raise OwnershipError("Device is already claimed by another user",
                                 code="already-claimed")

        already_owned = seen.get("owner") == uid
        if already_owned:
            logger.debug(f"Device {device_id} already owned by user {uid}")
        else:
            logger.info(f"Device {device_id} claimed by user {uid}")
        return {"device_id": device_id, "already_owned": already_owned}

    def check_device_ownership(self, device_id: str) -> dict:
        """
        Check whether the signed-in user owns a device.

        Returns:
            {"is_owner": bool, "owner": uid or None}
        """
        if not device_id:
            raise ValidationError("Device ID is required")
        user = self.session.require_user()
        owner = self.database.get(self._owner_path(device_id))
        return {"is_owner": owner == user.uid, "owner": owner}

    def _require_owner(self, device_id: str) -> str:
        if not device_id:
            raise ValidationError("Device ID is required")
        if not self.check_device_ownership(device_id)["is_owner"]:
            raise OwnershipError("You do not own this device")
        return self.session.uid

    def _require_readable(self, device_id: str) -> str:
        if not device_id:
            raise ValidationError("Device ID is required")
        if not self.check_device_ownership(device_id)["is_owner"]:
            raise DeviceNotFoundError("Device not found or unauthorized")
        return self.session.uid

    def remove_device_ownership(self, device_id: str) -> None:
        uid = self._require_owner(device_id)
        self.database.transaction(self._owner_path(device_id),
                                  lambda current: None if current == uid else current)
        logger.info(f"Device ownership removed: {device_id}")

    def migrate_existing_devices(self, uid: str) -> dict:
        """
        Claim ownership of every device the user already lists.

        Returns:
            Counts: claimed, already_owned, failed, total.
        """
        self.session.require_user(uid)
        claimed_ids = self._claimed_ids(uid)
        counts = {"claimed": 0, "already_owned": 0, "failed": 0,
                  "total": len(claimed_ids)}
        for device_id in claimed_ids:
            try:
                result = self.claim_device_ownership(uid, device_id)
            except OwnershipError as e:
                counts["failed"] += 1
                logger.error(f"Failed to claim device {device_id}: {e}")
                continue
            if result["already_owned"]:
                counts["already_owned"] += 1
            else:
                counts["claimed"] += 1
        logger.info(f"Migration complete: {counts['claimed']} claimed, "
                    f"{counts['already_owned']} already owned, "
                    f"{counts['failed']} failed")
        return counts

    # ── Device list ───────────────────────────────────────────────

    def _claimed_ids(self, uid: str) -> list[str]:
        claimed = self.database.get(format_path(config.CLAIMED_DEVICES_PATH, uid=uid))
        return list((claimed or {}).keys())

    def add_device(self, uid: str, device: dict) -> dict:
        """
        Claim a device and add it to the user's device list.

        Args:
            uid: Signed-in user.
            device: Device record; must contain deviceId.

        Returns:
            {"device_id": ..., "already_owned": bool}

        Raises:
            OwnershipError: The device is claimed by another user.
        """
        if not uid or not device:
            raise ValidationError("User ID and device data are required")
        self.session.require_user(uid)

        device_id = device.get("deviceId")
        if not device_id:
            raise ValidationError("Device ID is required")

        result = self.claim_device_ownership(uid, device_id)
        if result["already_owned"] and device_id in self._claimed_ids(uid):
            return result

        record = {k: v for k, v in device.items() if v is not None}
        self.database.update("/", {
            f"{format_path(config.CLAIMED_DEVICES_PATH, uid=uid)}/{device_id}": True,
            f"{format_path(config.USER_DEVICES_PATH, uid=uid)}/{device_id}": record,
        })
        logger.info(f"Device {device_id} added for user {uid}")
        return result

    def get_user_devices(self, uid: str) -> list[dict]:
        """
        Current view of every device the user has claimed.

        A device whose data cannot be read is still listed, with defaults.
        """
        if not uid:
            raise ValidationError("User ID is required")
        self.session.require_user(uid)

        devices = []
        for device_id in self._claimed_ids(uid):
            try:
                try:
                    self.claim_device_ownership(uid, device_id)
                except OwnershipError:
                    logger.warning(f"Device {device_id} is owned by another user")

                info = self.database.get(
                    format_path(config.DEVICE_INFO_PATH, device_id=device_id)) or {}
                data = self.database.get(
                    format_path(config.DEVICE_DATA_PATH, device_id=device_id)) or {}
            except exceptions.FirebaseError as e:
                logger.warning(f"Could not fetch data for device {device_id}: {e}")
                devices.append({
                    "id": device_id,
                    "deviceId": device_id,
                    "name": config.DEFAULT_DEVICE_NAME,
                    "status": config.STATUS_OFFLINE,
                    "totalUsage": 0,
                })
                continue

            devices.append({
                "id": device_id,
                "deviceId": device_id,
                "name": device_name(info),
                "location": info.get("location") or "Not Set",
                "status": info.get("status") or data.get("status") or config.STATUS_OFFLINE,
                "lastSeen": info.get("lastSeen") or now_ms(),
                "totalUsage": to_float(data.get("totalLitres")),
                "totalLitres": to_float(data.get("totalLitres")),
                "flowRate": to_float(data.get("flowRate")),
                "valveState": data.get("valveState") or config.VALVE_UNKNOWN,
                "batteryLevel": to_float(data.get("batteryPercentage")) or
                to_float(info.get("batteryPercentage")),
                "signalStrength": signal_strength(info),
                "data": data,
                "info": info,
            })

        logger.info(f"Retrieved {len(devices)} devices for user {uid}")
        return devices

    def update_device(self, uid: str, device_id: str, updates: dict) -> dict:
        """
        Update the user's record of a device (name, location, …).

        Fields set to None are left untouched.

        Returns:
            The fields written.
        """
        if not uid or not device_id or not updates:
            raise ValidationError("User ID, device ID, and updates are required")
        self.session.require_user(uid)

        path = f"{format_path(config.USER_DEVICES_PATH, uid=uid)}/{device_id}"
        if self.database.get(path) is None:
            raise DeviceNotFoundError("Device not found")

        clean = {k: v for k, v in updates.items() if v is not None}
        clean["updatedAt"] = iso_now()
        self.database.update(path, clean)
        logger.info(f"Device updated successfully: {device_id}")
        return clean

    def remove_device(self, uid: str, device_id: str) -> None:
        """
        Remove a device from the user's account and release ownership.

        The device's own data, history and analytics stay in place.
        """
        if not uid or not device_id:
            raise ValidationError("User ID and device ID are required")
        self.session.require_user(uid)

        stopped = self.listeners.cleanup_device(device_id)
        logger.info(f"Stopped {stopped} listeners for device {device_id}")

        self.database.delete(
            f"{format_path(config.CLAIMED_DEVICES_PATH, uid=uid)}/{device_id}")
        self.database.delete(
            f"{format_path(config.USER_DEVICES_PATH, uid=uid)}/{device_id}")
        self.database.transaction(self._owner_path(device_id),
                                  lambda current: None if current == uid else current)
        logger.info(f"Device {device_id} removed for user {uid}")

    # ── Commands ──────────────────────────────────────────────────

    def _send_command(self, device_id: str, command: str, value) -> None:
        self._require_owner(device_id)
        self.database.set(
            format_path(config.DEVICE_COMMAND_PATH, device_id=device_id,
                        command=command),
            value)

    def control_valve(self, device_id: str, should_open: bool) -> None:
        """Ask the device to open (True) or close (False) its valve."""
        if not device_id or not isinstance(should_open, bool):
            raise ValidationError("Device ID and valve state (boolean) are required")
        self._send_command(device_id, config.VALVE_COMMAND, should_open)
        logger.info(f"Valve control command sent: "
                    f"{'OPEN' if should_open else 'CLOSE'} for device {device_id}")

    def reset_total_litres(self, device_id: str) -> None:
        self._send_command(device_id, config.RESET_TOTAL_COMMAND, True)
        logger.info(f"Reset total command sent for device {device_id}")

    # ── Reads ─────────────────────────────────────────────────────

    def get_device_data(self, device_id: str) -> dict | None:
        self._require_readable(device_id)
        raw = self.database.get(format_path(config.DEVICE_DATA_PATH, device_id=device_id))
        return normalize_device_data(device_id, raw)

    def get_device_info(self, device_id: str) -> dict | None:
        self._require_readable(device_id)
        return self.database.get(format_path(config.DEVICE_INFO_PATH, device_id=device_id))

    def get_device_history(self, device_id: str,
                           time_range: str = config.DEFAULT_HISTORY_RANGE,
                           now: int = None) -> list[dict]:
        """
        History records of a device within a time range, oldest first.

        Args:
            time_range: One of config.HISTORY_RANGES; unknown values fall
                back to config.DEFAULT_HISTORY_RANGE.
            now: End of the range in epoch ms (defaults to the wall clock).
        """
        self._require_readable(device_id)
        seconds = config.HISTORY_RANGES.get(
            time_range, config.HISTORY_RANGES[config.DEFAULT_HISTORY_RANGE])
        now = now if now is not None else now_ms()
        start = now - seconds * 1000

        snapshot = self.database.query(
            format_path(config.HISTORY_PATH, device_id=device_id),
            "timestamp", start_at=start, end_at=now)
        history = [normalize_history_entry(key, value, now)
                   for key, value in snapshot.items() if isinstance(value, dict)]
        history.sort(key=lambda entry: entry["timestamp"])
        logger.debug(f"Retrieved {len(history)} history points for device {device_id}")
        return history

    def get_analytics_data(self, device_id: str) -> list[dict]:
        """Daily analytics rows (last config.ANALYTICS_LIMIT), oldest first."""
        self._require_readable(device_id)
        snapshot = self.database.query(
            format_path(config.ANALYTICS_PATH, device_id=device_id),
            "date", limit_to_last=config.ANALYTICS_LIMIT)
        rows = [
            {
                "id": key,
                "date": value.get("date"),
                "totalUsage": to_float(value.get("totalUsage")),
                "averageFlow": to_float(value.get("averageFlow")),
                "peakFlow": to_float(value.get("peakFlow")),
                "duration": to_float(value.get("duration")),
            }
            for key, value in snapshot.items() if isinstance(value, dict)
        ]
        rows.sort(key=lambda row: str(row["date"] or ""))
        return rows

    def test_device_connection(self, device_id: str) -> dict:
        """
        Check that an owned device has reported anything at all.

        Raises:
            DeviceNotFoundError: Neither info nor data exist.
        """
        self._require_owner(device_id)
        info = self.database.get(format_path(config.DEVICE_INFO_PATH, device_id=device_id))
        data = self.database.get(format_path(config.DEVICE_DATA_PATH, device_id=device_id))
        if info is None and data is None:
            logger.warning(f"Device {device_id} exists but has no data")
            raise DeviceNotFoundError("Device is not sending data")
        logger.info(f"Device {device_id} is connected and responding")
        return {"info": info, "data": data}

    # ── Listeners ─────────────────────────────────────────────────

    def _listen(self, key: str, kind: str, path: str, uid: str, device_id,
                on_value, error_callback, map_error):
        """Open a listener that drops itself when the session changes user."""
        self.listeners.cleanup(key)

        def handle_value(value):
            if not self.session.is_current(uid):
                logger.info(f"User no longer authenticated, cleaning up {key}")
                self.listeners.cleanup_later(key)
                return
            on_value(value)

        def handle_error(error):
            logger.error(f"Listener {key} error: {error}")
            self.listeners.cleanup_later(key)
            if error_callback is not None:
                error_callback(map_error(error))

        subscription = self.database.listen(path, handle_value, handle_error)
        if subscription.closed:
            return lambda: None
        return self.listeners.register(key, subscription.close, kind,
                                       user_id=uid, device_id=device_id)

    def listen_to_device_status(self, uid: str, callback, error_callback=None):
        """
        Stream the user's device records (users/<uid>/devices).

        Returns:
            Function that stops the listener.
        """
        if not uid or callback is None:
            raise ValidationError("User ID and callback function are required")
        self.session.require_user(uid)

        def on_value(value):
            devices = []
            for device_id, record in (value or {}).items():
                record = record if isinstance(record, dict) else {}
                devices.append({
                    **record,
                    "id": device_id,
                    "status": record.get("status") or config.STATUS_OFFLINE,
                    "batteryLevel": record.get("batteryLevel") or 0,
                    "signalStrength": record.get("signalStrength") or "unknown",
                    "totalUsage": record.get("totalUsage") or 0,
                })
            callback(devices)

        def map_error(error):
            if _permission_denied(error):
                return NotAuthenticatedError("Permission denied - please sign in again",
                                             code="permission-denied")
            return error

        return self._listen(listener_key("devices", uid), "devices",
                            format_path(config.USER_DEVICES_PATH, uid=uid),
                            uid, None, on_value, error_callback, map_error)

    def _device_error(self, device_id):
        def map_error(error):
            if _permission_denied(error):
                logger.info(f"Permission denied for device {device_id} - likely deleted")
                return OwnershipError("Device no longer accessible",
                                      code="permission-denied")
            return error
        return map_error

    def listen_to_device_info(self, device_id: str, callback, error_callback=None):
        """Stream devices/<id>/info; `callback` gets the info dict or None."""
        if not device_id or callback is None:
            raise ValidationError("Device ID and callback function are required")
        uid = self.session.require_user().uid
        return self._listen(listener_key("device_info", uid, device_id), "device_info",
                            format_path(config.DEVICE_INFO_PATH, device_id=device_id),
                            uid, device_id, callback, error_callback,
                            self._device_error(device_id))

    def listen_to_device_data(self, device_id: str, callback, error_callback=None):
        """Stream normalized devices/<id>/data; `callback` may receive None."""
        if not device_id or callback is None:
            raise ValidationError("Device ID and callback function are required")
        uid = self.session.require_user().uid
        if not self.check_device_ownership(device_id)["is_owner"]:
            logger.warning(f"Device ownership verification failed for {device_id}")

        def on_value(value):
            callback(normalize_device_data(device_id, value))

        return self._listen(listener_key("device_data", uid, device_id), "device_data",
                            format_path(config.DEVICE_DATA_PATH, device_id=device_id),
                            uid, device_id, on_value, error_callback,
                            self._device_error(device_id))
