"""
config.py — Water Monitor Client Configuration Constants
=========================================================

Centralizes all thresholds, database paths and service settings used by
the real-time device monitoring core. Tuning these values adjusts how
eagerly leaks and low batteries are reported and how long a device may
stay silent before it is shown as offline.

Each AquaSense unit reports to the Firebase Realtime Database:
- Flow sensor (L/min) and cumulative volume (litres)
- Solenoid valve state (OPEN / CLOSED)
- Battery percentage and Wi-Fi RSSI
"""

import os

# ═══════════════════════════════════════════════════════════════════
# FIREBASE CONNECTION
# ═══════════════════════════════════════════════════════════════════

FIREBASE_DATABASE_URL = os.environ.get(
    "FIREBASE_DATABASE_URL",
    "https://aquasense-monitor-default-rtdb.firebaseio.com",
)

# Service account key used by firebase_admin (override via env var)
_MONITOR_DIR = os.path.dirname(os.path.abspath(__file__))
FIREBASE_CREDENTIALS_PATH = os.environ.get(
    "FIREBASE_CREDENTIALS_PATH",
    os.path.join(_MONITOR_DIR, "..", "serviceAccountKey.json"),
)

# ═══════════════════════════════════════════════════════════════════
# DATABASE PATHS
# ═══════════════════════════════════════════════════════════════════

CLAIMED_DEVICES_PATH = "users/{uid}/claimedDevices"
USER_DEVICES_PATH = "users/{uid}/devices"
USER_PROFILE_PATH = "users/{uid}/profile"
USER_SETTINGS_PATH = "users/{uid}/settings"
USER_ROOT_PATH = "users/{uid}"

DEVICE_OWNER_PATH = "deviceOwners/{device_id}"
DEVICE_DATA_PATH = "devices/{device_id}/data"
DEVICE_INFO_PATH = "devices/{device_id}/info"
DEVICE_COMMAND_PATH = "devices/{device_id}/commands/{command}"

HISTORY_PATH = "history/{device_id}"
ANALYTICS_PATH = "analytics/{device_id}"

ALERTS_ROOT_PATH = "alerts"
USER_ALERTS_PATH = "alerts/{uid}"
BATTERY_TRACKING_PATH = "alertTracking/{device_id}/batteryAlerts"

# Command names understood by the device firmware
VALVE_COMMAND = "valveControl"
RESET_TOTAL_COMMAND = "resetTotal"

# ═══════════════════════════════════════════════════════════════════
# LEAK DETECTION
# ═══════════════════════════════════════════════════════════════════

# Flow (L/min) above which a CLOSED valve is considered to be leaking.
# The valve seals completely, so anything beyond sensor noise means water
# is bypassing it.
LEAK_FLOW_THRESHOLD = 0.5

# Severity bands for leak alerts (L/min)
LEAK_SEVERITY_HIGH = 10.0
LEAK_SEVERITY_MEDIUM = 5.0

# ═══════════════════════════════════════════════════════════════════
# BATTERY MONITORING
# ═══════════════════════════════════════════════════════════════════

# Battery percentage below which a low battery alert is raised.
LOW_BATTERY_THRESHOLD = 20

# Level the battery has to climb back to before another alert may fire.
# The 20–25 % band is the hysteresis that keeps a battery hovering around
# the threshold from producing an alert on every reading.
BATTERY_RECOVERY_THRESHOLD = 25

# Below this level the alert asks the user to act immediately.
CRITICAL_BATTERY_THRESHOLD = 10

# Minimum time between two battery alerts for the same device (seconds).
BATTERY_ALERT_COOLDOWN_SECONDS = 24 * 60 * 60

# ═══════════════════════════════════════════════════════════════════
# DEVICE STATUS
# ═══════════════════════════════════════════════════════════════════

# A device that reports "online" but has not been seen for this long is
# shown as offline.
OFFLINE_AFTER_SECONDS = 5 * 60

VALVE_OPEN = "OPEN"
VALVE_CLOSED = "CLOSED"
VALVE_UNKNOWN = "UNKNOWN"

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_LOADING = "loading"

DEFAULT_DEVICE_NAME = "Water Monitor"
DEFAULT_DEVICE_LOCATION = "Main Supply"

# ═══════════════════════════════════════════════════════════════════
# QUERY LIMITS AND TIME RANGES
# ═══════════════════════════════════════════════════════════════════

ALERT_LIST_LIMIT = 50
ANALYTICS_LIMIT = 365

# History time ranges accepted by DeviceService.get_device_history (seconds)
HISTORY_RANGES = {
    "1h": 60 * 60,
    "24h": 24 * 60 * 60,
    "7d": 7 * 24 * 60 * 60,
    "30d": 30 * 24 * 60 * 60,
    "12m": 365 * 24 * 60 * 60,
}
DEFAULT_HISTORY_RANGE = "24h"

# Timestamps below this value (ms) are ESP32 millis() since boot, not epoch
EPOCH_MS_FLOOR = 1_000_000_000_000

# ═══════════════════════════════════════════════════════════════════
# ACCOUNTS
# ═══════════════════════════════════════════════════════════════════

MIN_PASSWORD_LENGTH = 6

# Settings written for every new account
DEFAULT_NOTIFICATION_SETTINGS = {
    "leakAlerts": True,
    "usageReports": True,
    "systemUpdates": True,
}
DEFAULT_THRESHOLD_SETTINGS = {
    "leakThreshold": 50,
    "maxFlowThreshold": 1000,
    "lowBatteryThreshold": LOW_BATTERY_THRESHOLD,
}

# ═══════════════════════════════════════════════════════════════════
# DEVICE ENROLMENT
# ═══════════════════════════════════════════════════════════════════

DEVICE_ID_MIN_LENGTH = 3
DEVICE_ID_MAX_LENGTH = 50
DEVICE_NAME_MAX_LENGTH = 50
DEVICE_LOCATION_MAX_LENGTH = 100
DEVICE_TYPE = "Water Flow Sensor"

# ═══════════════════════════════════════════════════════════════════
# HTTP SERVICE
# ═══════════════════════════════════════════════════════════════════

SERVICE_PORT = int(os.environ.get("MONITOR_SERVICE_PORT", "5060"))

# ═══════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════

# Log level for the monitor (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL = os.environ.get("MONITOR_LOG_LEVEL", "INFO")
