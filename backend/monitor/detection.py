"""
detection.py — Leak and Low-Battery Alert Derivation
=====================================================

Derives alert conditions from streamed device readings and decides when an
alert should actually be raised, so that a condition that persists across
hundreds of readings produces exactly one alert.

Conditions:
    LEAK         — flow above config.LEAK_FLOW_THRESHOLD while the valve
                   reports CLOSED.
    LOW_BATTERY  — battery above 0 % and below config.LOW_BATTERY_THRESHOLD.
                   A reading of 0 means "no battery data", not empty.

Firing rules (per device):
    Leak:    fire on entering the condition; re-arm once flow drops back to
             the threshold or the valve opens.
    Battery: fire on entering the condition; re-arm only once the level
             reaches config.BATTERY_RECOVERY_THRESHOLD. Readings in the
             20–25 % band keep the current state.
"""

import logging
import threading
from dataclasses import dataclass

from . import config
from .utils import to_float

logger = logging.getLogger("monitor.detection")

# Alert types
ALERT_LEAK = "leak_detected"
ALERT_LOW_BATTERY = "low_battery"
ALERT_SYSTEM = "system"


def is_leak(flow_rate, valve_state: str) -> bool:
    return to_float(flow_rate) > config.LEAK_FLOW_THRESHOLD and \
        valve_state == config.VALVE_CLOSED


def is_low_battery(level) -> bool:
    level = to_float(level)
    return 0 < level < config.LOW_BATTERY_THRESHOLD


def leak_severity(flow_rate: float) -> str:
    """high / medium / low depending on how much water is escaping."""
    if flow_rate > config.LEAK_SEVERITY_HIGH:
        return "high"
    if flow_rate > config.LEAK_SEVERITY_MEDIUM:
        return "medium"
    return "low"


def battery_level_of(device: dict) -> float:
    return to_float(device.get("batteryPercentage")) or \
        to_float(device.get("batteryLevel"))


@dataclass
class _DeviceAlertState:
    leak_active: bool = False
    battery_alert_level: float | None = None


class AlertTracker:
    """
    Per-device alert state machine.

    Usage:
        tracker = AlertTracker()
        for alert_type in tracker.update(device):
            raise_alert(alert_type, device)
    """

    def __init__(self):
        self._states: dict[str, _DeviceAlertState] = {}
        self._lock = threading.Lock()

    def update(self, device: dict) -> list[str]:
        """
        Feed the latest merged view of a device.

        Args:
            device: Dict with deviceId, flowRate, valveState and
                batteryPercentage (or batteryLevel).

        Returns:
            Alert types that should be raised now (possibly empty).
        """
        device_id = device.get("deviceId")
        if not device_id:
            return []

        flow = to_float(device.get("flowRate"))
        valve = device.get("valveState") or config.VALVE_UNKNOWN
        battery = battery_level_of(device)
        fired = []

        with self._lock:
            state = self._states.setdefault(device_id, _DeviceAlertState())

            if is_leak(flow, valve):
                if not state.leak_active:
                    state.leak_active = True
                    fired.append(ALERT_LEAK)
                    logger.warning(f"LEAK: device {device_id} flow {flow} L/min "
                                   f"with valve CLOSED")
            elif state.leak_active:
                state.leak_active = False
                logger.info(f"Leak condition resolved for device {device_id}")

            if is_low_battery(battery):
                if state.battery_alert_level is None:
                    fired.append(ALERT_LOW_BATTERY)
                    logger.warning(f"LOW BATTERY: device {device_id} at {battery}%")
                state.battery_alert_level = battery
            elif battery >= config.BATTERY_RECOVERY_THRESHOLD and \
                    state.battery_alert_level is not None:
                state.battery_alert_level = None
                logger.info(f"Battery recovered for device {device_id} ({battery}%)")

        return fired

    def is_leaking(self, device_id: str) -> bool:
        with self._lock:
            state = self._states.get(device_id)
            return bool(state and state.leak_active)

    def battery_alerted(self, device_id: str) -> bool:
        with self._lock:
            state = self._states.get(device_id)
            return bool(state and state.battery_alert_level is not None)

    def reset(self, device_id: str = None) -> None:
        """Forget one device's state, or every device's."""
        with self._lock:
            if device_id is None:
                self._states.clear()
            else:
                self._states.pop(device_id, None)


def alert_counts(devices: list[dict]) -> dict:
    """
    Count devices currently in each alert condition.

    Returns:
        Dict with low_battery, leak, offline and total.
    """
    counts = {"low_battery": 0, "leak": 0, "offline": 0}
    for device in devices:
        if is_low_battery(battery_level_of(device)):
            counts["low_battery"] += 1
        if is_leak(device.get("flowRate"),
                   device.get("valveState") or config.VALVE_UNKNOWN):
            counts["leak"] += 1
        if str(device.get("status") or "").lower() == config.STATUS_OFFLINE:
            counts["offline"] += 1
    counts["total"] = counts["low_battery"] + counts["leak"] + counts["offline"]
    return counts
