"""
backend.monitor — Real-Time Core of the AquaSense Water Monitor
================================================================

This package implements the client-side core of the AquaSense household
water monitor: it follows a user's devices in the Firebase Realtime
Database, merges their streamed readings into a live view, derives leak
and low battery alerts, and manages device ownership and commands.

Architecture:
    ESP32 flow meter + valve → Wi-Fi → Firebase Realtime Database
                                              ↓
                               devices/<id>/data | info  (streamed)
                                              ↓
                                    DeviceDataStore
                                    (merged device views)
                                              ↓
                                 AlertTracker (hysteresis)
                                              ↓
                       alerts/<uid>  +  email / SMS notification
                                              ↑
                 DeviceService → devices/<id>/commands → valve / counter reset

Modules:
    config     — Thresholds, database paths and service settings
    database   — firebase_admin.db adapter with merged streaming snapshots
    listeners  — Keyed registry of live subscriptions
    session    — Signed-in user and auth-state fan-out
    auth       — Sign-up, token sign-in and profile management
    telemetry  — Normalization of device data / info / history records
    detection  — Leak and low battery conditions and alert state machine
    alerts     — Alert records, alert feed listener and notifications
    battery    — Per-device battery monitor with alert cooldown
    devices    — Ownership claims, device list, commands and reads
    store      — Aggregated real-time state of the user's devices
    analytics  — Usage charts from history (pandas)
    pairing    — QR / manual device enrolment payloads
    service    — Flask HTTP service
    utils      — Shared helpers and logging setup
"""

__version__ = "1.0.0"
__author__ = "Water Monitoring IoT Team"
