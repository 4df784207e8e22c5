"""
alerts.py — Alert Records and Notifications
============================================

Alerts live under alerts/<uid>/<pushId>:

    { id, userId, type, title, message, deviceId, deviceName,
      read, createdAt, readAt?, data }

Leak and low-battery alerts are created by the device data store and the
battery monitor; this module owns the record format, the per-user alert
feed listener and the follow-up email / SMS notifications.
"""

import logging

from . import config
from .database import RealtimeDatabase
from .detection import ALERT_LEAK, ALERT_LOW_BATTERY, ALERT_SYSTEM, leak_severity
from .errors import AlertNotFoundError, ValidationError
from .listeners import ListenerRegistry, listener_key
from .session import Session
from .utils import format_path, iso_now, to_epoch_ms

logger = logging.getLogger("monitor.alerts")


def _sort_newest_first(alerts: list[dict]) -> list[dict]:
    return sorted(alerts, key=lambda a: to_epoch_ms(a.get("createdAt"), 0),
                  reverse=True)


def _format_percent(level: float) -> str:
    return f"{level:g}"


class Notifier:
    """
    Out-of-app delivery of alerts.

    There is no mail or SMS provider wired in: messages are prepared and
    logged so that a provider hook can pick them up from the log stream.
    """

    def __init__(self, database: RealtimeDatabase, session: Session):
        self.database = database
        self.session = session

    def send_email(self, uid: str, alert: dict) -> bool:
        user = self.session.current_user
        if user is None or user.uid != uid or not user.email:
            logger.info("No email found for user, skipping email notification")
            return False
        logger.info(f"Email notification prepared for {user.email}: "
                    f"{alert['title']} - {alert['message']}")
        return True

    def send_sms(self, uid: str, alert: dict) -> bool:
        profile = self.database.get(format_path(config.USER_PROFILE_PATH, uid=uid))
        phone = (profile or {}).get("phoneNumber")
        if not phone:
            logger.info("No phone number found for user, skipping SMS notification")
            return False
        logger.info(f"SMS notification prepared for {phone}: "
                    f"{alert['title']} - {alert['message']}")
        return True

    def notify(self, uid: str, alert: dict) -> dict:
        """Send every notification channel; failures are logged, not raised."""
        results = {}
        for channel, send in (("email", self.send_email), ("sms", self.send_sms)):
            try:
                results[channel] = send(uid, alert)
            except Exception as e:
                logger.error(f"{channel} notification failed: {e}")
                results[channel] = False
        return results


class AlertService:
    """
    Create, query and watch a user's alerts.

    Attributes:
        database (RealtimeDatabase): Database adapter.
        session (Session): Signed-in user.
        notifier (Notifier): Email / SMS dispatch for device alerts.
        listeners (ListenerRegistry): Live alert feed listeners.
    """

    def __init__(self, database: RealtimeDatabase, session: Session,
                 notifier: Notifier = None):
        self.database = database
        self.session = session
        self.notifier = notifier or Notifier(database, session)
        self.listeners = ListenerRegistry("alert")
        session.on_change(self._on_user_change)

    def _on_user_change(self, previous, user) -> None:
        if previous is not None:
            self.listeners.cleanup_user(previous.uid)

    # ── Records ───────────────────────────────────────────────────

    def create_alert(self, uid: str, alert_data: dict) -> dict:
        """
        Store a new alert for a user.

        Args:
            uid: Owner of the alert.
            alert_data: type, title, message, deviceId, deviceName, data.

        Returns:
            The stored alert record, including its generated id.
        """
        if not uid or not alert_data:
            raise ValidationError("User ID and alert data are required")

        path = format_path(config.USER_ALERTS_PATH, uid=uid)
        alert = {
            "userId": uid,
            "type": alert_data.get("type") or ALERT_SYSTEM,
            "title": alert_data.get("title") or "",
            "message": alert_data.get("message") or "",
            "deviceId": alert_data.get("deviceId"),
            "deviceName": alert_data.get("deviceName"),
            "read": False,
            "createdAt": iso_now(),
            "data": alert_data.get("data") or {},
        }
        alert_id = self.database.push(path, alert)
        self.database.update(f"{path}/{alert_id}", {"id": alert_id})
        alert["id"] = alert_id

        logger.info(f"Alert created: {alert_id} ({alert['type']}) for user {uid}")
        return alert

    def get_user_alerts(self, uid: str, limit: int = config.ALERT_LIST_LIMIT) -> list[dict]:
        """Most recent alerts of a user, newest first."""
        if not uid:
            raise ValidationError("User ID is required")
        path = format_path(config.USER_ALERTS_PATH, uid=uid)
        snapshot = self.database.query(path, "createdAt", limit_to_last=limit)
        alerts = [{**value, "id": key} for key, value in snapshot.items()]
        logger.debug(f"Retrieved {len(alerts)} alerts for user {uid}")
        return _sort_newest_first(alerts)

    def unread_count(self, uid: str) -> int:
        return sum(1 for alert in self.get_user_alerts(uid) if not alert.get("read"))

    def _locate(self, alert_id: str, uid: str = None) -> str:
        if not alert_id:
            raise ValidationError("Alert ID is required")
        if uid:
            path = f"{format_path(config.USER_ALERTS_PATH, uid=uid)}/{alert_id}"
            if self.database.get(path) is None:
                raise AlertNotFoundError(f"Alert not found: {alert_id}")
            return path

        # Owner unknown: scan every user's alerts.
        everything = self.database.get(config.ALERTS_ROOT_PATH) or {}
        for owner, alerts in everything.items():
            if isinstance(alerts, dict) and alert_id in alerts:
                return f"{config.ALERTS_ROOT_PATH}/{owner}/{alert_id}"
        raise AlertNotFoundError(f"Alert not found: {alert_id}")

    def mark_alert_as_read(self, alert_id: str, uid: str = None) -> None:
        path = self._locate(alert_id, uid)
        self.database.update(path, {"read": True, "readAt": iso_now()})
        logger.info(f"Alert marked as read: {alert_id}")

    def delete_alert(self, alert_id: str, uid: str = None) -> None:
        path = self._locate(alert_id, uid)
        self.database.delete(path)
        logger.info(f"Alert deleted: {alert_id}")

    # ── Device alerts ─────────────────────────────────────────────

    def create_leak_alert(self, uid: str, device_id: str, device_name: str,
                          flow_rate: float, duration: int = 0) -> dict:
        """
        Raise a leak alert and notify the user.

        Args:
            flow_rate: Flow through the closed valve (L/min).
            duration: Minutes the leak has been observed.
        """
        alert_data = {
            "type": ALERT_LEAK,
            "title": "Leak Detected!",
            "message": (f"Possible water leak detected on {device_name}. "
                        f"Flow rate: {flow_rate:.1f} L/min for {duration} minutes."),
            "deviceId": device_id,
            "deviceName": device_name,
            "data": {
                "flowRate": flow_rate,
                "duration": duration,
                "timestamp": iso_now(),
                "severity": leak_severity(flow_rate),
            },
        }
        alert = self.create_alert(uid, alert_data)
        self.notifier.notify(uid, alert)
        return alert

    def create_low_battery_alert(self, uid: str, device_id: str,
                                 device_name: str, battery_level: float) -> dict:
        alert_data = {
            "type": ALERT_LOW_BATTERY,
            "title": "Low Battery Alert",
            "message": (f"{device_name} battery is low "
                        f"({_format_percent(battery_level)}%). "
                        "Please charge or replace batteries soon."),
            "deviceId": device_id,
            "deviceName": device_name,
            "data": {
                "batteryLevel": battery_level,
                "timestamp": iso_now(),
                "actionRequired": battery_level < config.CRITICAL_BATTERY_THRESHOLD,
            },
        }
        alert = self.create_alert(uid, alert_data)
        self.notifier.notify(uid, alert)
        return alert

    # ── Live feed ─────────────────────────────────────────────────

    def listen_to_user_alerts(self, uid: str, callback, error_callback=None):
        """
        Stream a user's alert list.

        `callback` receives the newest config.ALERT_LIST_LIMIT alerts, newest
        first, on every change. The listener drops itself once the session
        no longer belongs to `uid`.

        Returns:
            Function that stops the listener.
        """
        if not uid or callback is None:
            raise ValidationError("User ID and callback function are required")
        self.session.require_user(uid)

        key = listener_key("alerts", uid)
        self.listeners.cleanup(key)
        logger.info(f"Setting up alerts listener for user: {uid}")

        def on_value(value):
            if not self.session.is_current(uid):
                logger.info("User no longer authenticated, cleaning up alerts listener")
                self.listeners.cleanup_later(key)
                return
            alerts = [{**alert, "id": alert_id}
                      for alert_id, alert in (value or {}).items()]
            alerts = _sort_newest_first(alerts)[:config.ALERT_LIST_LIMIT]
            logger.debug(f"Alerts update: {len(alerts)} alerts")
            callback(alerts)

        def on_error(error):
            logger.error(f"Alerts listener error: {error}")
            self.listeners.cleanup_later(key)
            if error_callback is not None:
                error_callback(error)

        subscription = self.database.listen(
            format_path(config.USER_ALERTS_PATH, uid=uid), on_value, on_error)
        if subscription.closed:
            return lambda: None
        return self.listeners.register(key, subscription.close, "alerts", user_id=uid)

    def cleanup_all_listeners(self) -> int:
        return self.listeners.cleanup_all()

    def active_listeners(self) -> list[dict]:
        return self.listeners.active()
