"""
store.py — Real-Time Device Data Store
=======================================

Keeps a live, merged view of every device the signed-in user has claimed
and derives alerts from it.

Subscriptions:
    users/<uid>/claimedDevices   — which devices to follow
        └─ devices/<id>/data     — readings   (one listener per device)
        └─ devices/<id>/info     — heartbeat / metadata

When the claimed list changes, listeners for new devices are opened and
listeners (and views) for devices that disappeared are closed. Every data
update runs through an AlertTracker; leak and low battery alerts are then
raised through the AlertService.

Lifecycle:
    start()                         subscribe for the session user
    stop()                          drop every subscription
    refresh()                       stop() + start()
    handle_app_state_change(state)  background -> active reconnects;
                                    going to background keeps listening
    session user switch / sign-out  stop(), reset, start() for the new user
"""

import logging
import threading

from . import config
from .alerts import AlertService
from .database import RealtimeDatabase
from .detection import ALERT_LEAK, ALERT_LOW_BATTERY, AlertTracker, alert_counts
from .listeners import ListenerRegistry, listener_key
from .session import Session
from .telemetry import device_name, device_status, normalize_device_data, valve_status
from .utils import format_path, now_ms, to_float

logger = logging.getLogger("monitor.store")

APP_ACTIVE = "active"
APP_INACTIVE = "inactive"
APP_BACKGROUND = "background"


def _placeholder(device_id: str) -> dict:
    return {
        "id": device_id,
        "deviceId": device_id,
        "name": config.DEFAULT_DEVICE_NAME,
        "location": config.DEFAULT_DEVICE_LOCATION,
        "status": config.STATUS_LOADING,
        "totalUsage": 0.0,
    }


class DeviceDataStore:
    """
    Aggregated real-time state of the user's devices.

    Usage:
        store = DeviceDataStore(database, session, alert_service)
        store.start()
        store.on_update(lambda devices: render(devices))
        ...
        store.stop()

    Attributes:
        loading (bool): True until the claimed device list has been read.
        error (str | None): Last subscription error.
        last_update (int): Epoch ms of the last merged change.
    """

    def __init__(self, database: RealtimeDatabase, session: Session,
                 alerts: AlertService, tracker: AlertTracker = None,
                 clock=now_ms):
        self.database = database
        self.session = session
        self.alerts = alerts
        self.tracker = tracker or AlertTracker()
        self.clock = clock
        self.listeners = ListenerRegistry("store")

        self.loading = True
        self.error = None
        self.last_update = clock()
        self.app_state = APP_ACTIVE

        self._uid = None
        self._devices: dict[str, dict] = {}
        self._observers = []
        self._lock = threading.RLock()
        session.on_change(self._on_user_change)

    # ── Lifecycle ─────────────────────────────────────────────────

    def start(self) -> None:
        """Subscribe to the signed-in user's claimed devices."""
        uid = self.session.uid
        if uid is None:
            logger.info("Cannot set up listeners: no user")
            with self._lock:
                self._uid = None
                self._devices.clear()
                self.loading = False
            self._notify()
            return

        with self._lock:
            self._uid = uid
            self.loading = True
            self.error = None
        logger.info(f"Setting up real-time device listeners for user: {uid}")

        def on_error(error):
            logger.error(f"Error listening to user devices: {error}")
            with self._lock:
                self.error = str(error)
                self.loading = False
            self._notify()

        subscription = self.database.listen(
            format_path(config.CLAIMED_DEVICES_PATH, uid=uid),
            lambda value: self._on_claimed(uid, value), on_error)
        if not subscription.closed:
            self.listeners.register(listener_key("claimed", uid), subscription.close,
                                    "claimed", user_id=uid)

    def stop(self) -> None:
        """Close every listener; the device views are kept."""
        with self._lock:
            self._uid = None
        self.listeners.cleanup_all()

    def refresh(self) -> None:
        logger.info("Manual refresh triggered")
        self.stop()
        self.start()

    def handle_app_state_change(self, next_state: str) -> None:
        """
        React to the host app moving between foreground and background.

        Streams may have been cut while the app was suspended, so coming
        back to the foreground reconnects everything. Going to the
        background keeps the listeners running.
        """
        previous, self.app_state = self.app_state, next_state
        if previous in (APP_INACTIVE, APP_BACKGROUND) and next_state == APP_ACTIVE:
            logger.info("App resumed - reconnecting listeners")
            if self.session.uid is not None:
                self.refresh()
        elif next_state in (APP_INACTIVE, APP_BACKGROUND):
            logger.info("App backgrounded - keeping listeners active")

    def _on_user_change(self, previous, user) -> None:
        self.stop()
        self.tracker.reset()
        with self._lock:
            self._devices.clear()
            self.error = None
        if user is not None:
            self.start()
        else:
            with self._lock:
                self.loading = False
            self._notify()

    # ── Observers ─────────────────────────────────────────────────

    def on_update(self, callback):
        """
        Register `callback(devices)` for every merged change.

        Returns:
            Function that removes the callback.
        """
        with self._lock:
            self._observers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            self.last_update = self.clock()
            observers = list(self._observers)
        devices = self.devices
        for callback in observers:
            try:
                callback(devices)
            except Exception as e:
                logger.error(f"Store observer failed: {e}", exc_info=True)

    # ── Subscription handlers ─────────────────────────────────────

    def _is_live(self, uid: str) -> bool:
        return self._uid == uid and self.session.is_current(uid)

    def _on_claimed(self, uid: str, value) -> None:
        if not self._is_live(uid):
            return
        claimed_ids = list((value or {}).keys())
        logger.info(f"Claimed devices list updated ({len(claimed_ids)} devices)")

        to_open = []
        with self._lock:
            previous = self._devices
            self._devices = {}
            for device_id in claimed_ids:
                self._devices[device_id] = previous.get(device_id) or _placeholder(device_id)
                if listener_key("data", uid, device_id) not in self.listeners:
                    to_open.append(device_id)
            removed = [d for d in previous if d not in self._devices]
            self.loading = False

        for device_id in removed:
            logger.info(f"Removing listeners for deleted device: {device_id}")
            self.listeners.cleanup_device(device_id)
            self.tracker.reset(device_id)

        for device_id in to_open:
            self._open_device_listeners(uid, device_id)

        self._notify()

    def _open_device_listeners(self, uid: str, device_id: str) -> None:
        for kind, template, handler in (
            ("data", config.DEVICE_DATA_PATH, self._on_data),
            ("info", config.DEVICE_INFO_PATH, self._on_info),
        ):
            def on_value(value, handler=handler):
                if self._is_live(uid):
                    handler(uid, device_id, value)

            def on_error(error, kind=kind):
                logger.error(f"Error listening to device {device_id} {kind}: {error}")

            subscription = self.database.listen(
                format_path(template, device_id=device_id), on_value, on_error)
            if not subscription.closed:
                self.listeners.register(listener_key(kind, uid, device_id),
                                        subscription.close, kind,
                                        user_id=uid, device_id=device_id)

    def _on_data(self, uid: str, device_id: str, value) -> None:
        data = normalize_device_data(device_id, value)
        if data is None:
            return

        with self._lock:
            view = self._devices.get(device_id)
            if view is None:
                return
            view.update({
                "data": value,
                "flowRate": data["flowRate"],
                "totalUsage": data["totalLitres"] or to_float(view.get("totalUsage")),
                "totalLitres": data["totalLitres"],
                "valveState": data["valveState"],
                "valveStatus": valve_status(data["valveState"]),
                "batteryLevel": data["batteryPercentage"],
                "batteryPercentage": data["batteryPercentage"],
                "rssi": data["rssi"] if data["rssi"] is not None else view.get("rssi"),
                "alertFlag": data["alertFlag"],
                "timestamp": data["timestamp"],
                "lastDataUpdate": self.clock(),
            })
            # The info heartbeat decides online/offline once it has been seen.
            if "info" not in view and value.get("status"):
                view["status"] = value["status"]
            fired = self.tracker.update(view)
            snapshot = dict(view)

        logger.debug(f"Device {device_id} data updated: flow={data['flowRate']} "
                     f"total={data['totalLitres']} valve={data['valveState']} "
                     f"battery={data['batteryPercentage']}")
        self._raise_alerts(uid, snapshot, fired)
        self._notify()

    def _on_info(self, uid: str, device_id: str, value) -> None:
        if not value:
            return
        with self._lock:
            view = self._devices.get(device_id)
            if view is None:
                return
            view.update({
                "info": value,
                "name": device_name(value, view.get("name")),
                "location": value.get("location") or view.get("location"),
                "status": device_status(value, self.clock()),
                "lastSeen": value.get("lastSeen"),
                "lastInfoUpdate": self.clock(),
            })
            if "lastDataUpdate" not in view and value.get("batteryPercentage") is not None:
                battery = to_float(value.get("batteryPercentage"))
                view["batteryPercentage"] = battery
                view["batteryLevel"] = battery
            status = view["status"]

        logger.debug(f"Device {device_id} info updated: status={status}")
        self._notify()

    def _raise_alerts(self, uid: str, device: dict, fired: list[str]) -> None:
        for alert_type in fired:
            try:
                if alert_type == ALERT_LEAK:
                    self.alerts.create_leak_alert(
                        uid, device["deviceId"], device.get("name"),
                        device["flowRate"], 0)
                elif alert_type == ALERT_LOW_BATTERY:
                    self.alerts.create_low_battery_alert(
                        uid, device["deviceId"], device.get("name"),
                        device["batteryPercentage"])
            except Exception as e:
                logger.error(f"Error creating {alert_type} alert for "
                             f"{device['deviceId']}: {e}")

    # ── Derived state ─────────────────────────────────────────────

    @property
    def devices(self) -> list[dict]:
        with self._lock:
            return [dict(view) for view in self._devices.values()]

    def get_device(self, device_id: str) -> dict | None:
        for device in self.devices:
            if device_id in (device.get("deviceId"), device.get("id")):
                return device
        return None

    def devices_by_status(self, status: str) -> list[dict]:
        wanted = status.lower()
        return [d for d in self.devices if str(d.get("status") or "").lower() == wanted]

    @property
    def total_usage(self) -> float:
        return sum(to_float(d.get("totalUsage")) or to_float(d.get("totalLitres"))
                   for d in self.devices)

    def flow_metrics(self) -> dict:
        """Flow statistics over devices that currently have flow."""
        flows = [to_float(d.get("flowRate")) for d in self.devices]
        flows = [f for f in flows if f > 0]
        return {
            "active_devices": len(flows),
            "total_flow": sum(flows),
            "peak_flow": max(flows, default=0.0),
            "average_flow": sum(flows) / len(flows) if flows else 0.0,
        }

    @property
    def average_flow(self) -> float:
        return self.flow_metrics()["average_flow"]

    @property
    def peak_flow(self) -> float:
        return self.flow_metrics()["peak_flow"]

    @property
    def active_devices(self) -> int:
        return self.flow_metrics()["active_devices"]

    @property
    def online_count(self) -> int:
        return len(self.devices_by_status(config.STATUS_ONLINE))

    @property
    def offline_count(self) -> int:
        return len(self.devices_by_status(config.STATUS_OFFLINE))

    @property
    def alert_counts(self) -> dict:
        return alert_counts(self.devices)

    @property
    def total_alerts(self) -> int:
        return self.alert_counts["total"]

    @property
    def has_active_alerts(self) -> bool:
        return self.total_alerts > 0

    def snapshot(self) -> dict:
        """Everything a dashboard needs, in one dict."""
        devices = self.devices
        flow = self.flow_metrics()
        counts = alert_counts(devices)
        return {
            "devices": devices,
            "loading": self.loading,
            "error": self.error,
            "last_update": self.last_update,
            "total_usage": self.total_usage,
            "average_flow": flow["average_flow"],
            "peak_flow": flow["peak_flow"],
            "active_devices": flow["active_devices"],
            "total_devices": len(devices),
            "online_devices": self.online_count,
            "offline_devices": self.offline_count,
            "alert_counts": counts,
            "total_alerts": counts["total"],
            "has_active_alerts": counts["total"] > 0,
        }
