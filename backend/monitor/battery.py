"""
battery.py — Battery Monitor
=============================

Watches devices/<id>/data for each monitored device and raises a low
battery alert when the level drops below config.LOW_BATTERY_THRESHOLD.

Unlike the hysteresis in detection.AlertTracker, which lives only as long
as the process, the monitor enforces a wall-clock cooldown
(config.BATTERY_ALERT_COOLDOWN_SECONDS) between alerts for the same device
and records every alert under alertTracking/<id>/batteryAlerts:

    { lastAlert, alertCount, lastBatteryLevel }
"""

import logging
import threading
import time

from . import config
from .alerts import AlertService
from .database import RealtimeDatabase
from .detection import is_low_battery
from .listeners import ListenerRegistry
from .session import Session
from .utils import format_path, to_float

logger = logging.getLogger("monitor.battery")

COOLDOWN_ACTIVE = "cooldown_active"


class BatteryMonitor:
    """
    Per-device battery listeners with alert cooldown.

    Follows the session: signing in monitors all of the user's devices,
    signing out or switching accounts stops the previous user's monitors.

    Args:
        database: Database adapter.
        alerts: Alert service used to raise low battery alerts.
        session: Signed-in user.
        clock: Returns the current time in seconds (injectable for tests).
    """

    def __init__(self, database: RealtimeDatabase, alerts: AlertService,
                 session: Session, clock=time.time):
        self.database = database
        self.alerts = alerts
        self.session = session
        self.clock = clock
        self.listeners = ListenerRegistry("battery")
        self._last_alert: dict[str, float] = {}
        self._lock = threading.Lock()
        session.on_change(self._on_user_change)

    def _on_user_change(self, previous, user) -> None:
        if previous is not None:
            logger.info(f"Stopping battery monitoring for {previous.uid}")
            self.stop_all()
        if user is not None:
            self.monitor_all_devices(user.uid)

    @staticmethod
    def _key(device_id: str) -> str:
        return f"battery_{device_id}"

    def monitor_device(self, uid: str, device_id: str, device_name: str):
        """
        Start watching one device's battery.

        Returns:
            Function that stops monitoring this device.
        """
        key = self._key(device_id)
        self.listeners.cleanup(key)
        logger.info(f"Starting battery monitor for device: {device_id}")

        def on_value(data):
            if not data or not self.session.is_current(uid):
                return
            level = data.get("batteryPercentage")
            if level is None:
                logger.debug(f"No battery data for device {device_id}")
                return
            level = to_float(level)
            logger.debug(f"Battery level for {device_name}: {level}%")
            if is_low_battery(level):
                self.handle_low_battery(uid, device_id, device_name, level)

        def on_error(error):
            logger.error(f"Battery listener error for {device_id}: {error}")

        subscription = self.database.listen(
            format_path(config.DEVICE_DATA_PATH, device_id=device_id),
            on_value, on_error)
        self.listeners.register(key, subscription.close, "battery",
                                user_id=uid, device_id=device_id)
        return lambda: self.stop(device_id)

    def handle_low_battery(self, uid: str, device_id: str, device_name: str,
                           battery_level: float) -> dict:
        """
        Raise a low battery alert unless the device is in cooldown.

        Returns:
            {"created": True, "alert": ...} or
            {"created": False, "reason": "cooldown_active"}.
        """
        now = self.clock()
        with self._lock:
            last = self._last_alert.get(device_id)
            if last is not None and now - last < config.BATTERY_ALERT_COOLDOWN_SECONDS:
                logger.debug(f"Battery alert cooldown active for {device_name} "
                             f"({battery_level}%)")
                return {"created": False, "reason": COOLDOWN_ACTIVE}
            self._last_alert[device_id] = now

        try:
            alert = self.alerts.create_low_battery_alert(
                uid, device_id, device_name, battery_level)
        except Exception:
            with self._lock:
                if self._last_alert.get(device_id) == now:
                    del self._last_alert[device_id]
            raise

        now_ms = int(now * 1000)

        def record(current):
            current = current or {}
            return {
                "lastAlert": now_ms,
                "alertCount": int(current.get("alertCount") or 0) + 1,
                "lastBatteryLevel": battery_level,
            }

        self.database.transaction(
            format_path(config.BATTERY_TRACKING_PATH, device_id=device_id), record)
        logger.info(f"Low battery alert created for {device_name}")
        return {"created": True, "alert": alert}

    def monitor_all_devices(self, uid: str) -> int:
        """
        Monitor every device listed under users/<uid>/devices.

        Returns:
            Number of devices now monitored.
        """
        devices = self.database.get(format_path(config.USER_DEVICES_PATH, uid=uid))
        if not devices:
            logger.info(f"No devices found for user {uid}")
            return 0

        count = 0
        for device in devices.values():
            if not isinstance(device, dict):
                continue
            if device.get("deviceId") and device.get("name"):
                self.monitor_device(uid, device["deviceId"], device["name"])
                count += 1
        logger.info(f"Battery monitoring started for {count} devices")
        return count

    def stop(self, device_id: str) -> None:
        if self.listeners.cleanup(self._key(device_id)):
            logger.info(f"Stopped battery monitor for: {device_id}")

    def stop_all(self) -> None:
        self.listeners.cleanup_all()
        with self._lock:
            self._last_alert.clear()

    def active_monitors(self) -> list[dict]:
        return [
            {"key": m["key"], "device_id": m["device_id"], "user_id": m["user_id"]}
            for m in self.listeners.active()
        ]
