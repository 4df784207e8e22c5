"""
service.py — Monitor HTTP Service (Flask)
==========================================

Small HTTP front for the monitoring core, for processes that cannot embed
the Python package (dashboards, scripts, the notification worker).

Every request except /health and /status carries a Firebase ID token:

    Authorization: Bearer <idToken>

The token's user becomes the session user for that request only; each
request gets its own Session and services.

Endpoints:
    GET    /health                     — Service health check
    GET    /status                     — Version, database and uptime
    GET    /devices                    — Claimed devices with current data
    POST   /devices                    — Claim a device {qr} or {deviceId, name, location}
    GET    /devices/<id>               — Current data and info of one device
    DELETE /devices/<id>               — Remove a device from the account
    POST   /devices/<id>/valve         — {open: bool}
    POST   /devices/<id>/reset         — Reset the cumulative counter
    GET    /devices/<id>/history       — ?range=1h|24h|7d|30d|12m
    GET    /devices/<id>/usage         — ?period=D|W|M|Y&tz=<zone>
    GET    /alerts                     — Newest alerts and unread count
    POST   /alerts/<id>/read           — Mark an alert read
    DELETE /alerts/<id>                — Delete an alert

Run:
    python backend/monitor/service.py
    # Starts on port 5060 by default (configurable via MONITOR_SERVICE_PORT env var)
"""

import os
import sys
import time
import logging

from firebase_admin import auth as firebase_auth
from flask import Flask, g, jsonify, request

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from backend.monitor import __version__, config
from backend.monitor.alerts import AlertService
from backend.monitor.analytics import PERIOD_DAY, load_usage
from backend.monitor.database import RealtimeDatabase
from backend.monitor.devices import DeviceService
from backend.monitor.errors import (
    AlertNotFoundError,
    AuthError,
    DeviceNotFoundError,
    MonitorError,
    NotAuthenticatedError,
    OwnershipError,
    ValidationError,
)
from backend.monitor.pairing import build_device_record, parse_qr_payload, validate_manual_entry
from backend.monitor.session import Session, User
from backend.monitor.utils import setup_logging

logger = logging.getLogger("monitor.service")

# Domain error -> HTTP status
STATUS_CODES = {
    ValidationError: 400,
    NotAuthenticatedError: 401,
    AuthError: 401,
    OwnershipError: 403,
    DeviceNotFoundError: 404,
    AlertNotFoundError: 404,
}


def verify_firebase_token(id_token: str) -> User:
    """Default token verifier: firebase_admin ID token check."""
    try:
        claims = firebase_auth.verify_id_token(id_token)
    except firebase_auth.ExpiredIdTokenError:
        raise AuthError("Your session has expired. Please sign in again",
                        code="auth/id-token-expired")
    except (firebase_auth.InvalidIdTokenError, ValueError):
        raise AuthError("Invalid authentication token", code="auth/invalid-credential")
    return User(
        uid=claims["uid"],
        email=claims.get("email"),
        display_name=claims.get("name"),
        email_verified=bool(claims.get("email_verified", False)),
    )


def _status_for(error: MonitorError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def create_app(database: RealtimeDatabase = None, token_verifier=None) -> Flask:
    """
    Build the Flask app.

    Args:
        database: Database adapter; a RealtimeDatabase on the default
            firebase_admin app when omitted.
        token_verifier: Callable(id_token) -> User, raising AuthError for
            bad tokens. Defaults to verify_firebase_token.
    """
    if database is None:
        database = RealtimeDatabase()
        database.initialize()
    verify = token_verifier or verify_firebase_token
    started = time.time()

    app = Flask(__name__)

    @app.errorhandler(MonitorError)
    def handle_monitor_error(error):
        status = _status_for(error)
        if status >= 500:
            logger.error(f"Unhandled monitor error: {error}", exc_info=True)
        return jsonify({"error": error.message, "code": error.code}), status

    @app.before_request
    def authenticate():
        if request.endpoint in (None, "health", "status"):
            return None
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            raise NotAuthenticatedError("Missing bearer token")
        user = verify(header[len("Bearer "):].strip())
        session = Session(user)
        g.session = session
        g.devices = DeviceService(database, session)
        g.alerts = AlertService(database, session)
        return None

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({
            "status": "OK",
            "service": "AquaSense Monitor",
        })

    @app.route("/status", methods=["GET"])
    def status():
        return jsonify({
            "status": "running",
            "version": __version__,
            "database": database.url if hasattr(database, "url") else None,
            "uptime_seconds": int(time.time() - started),
        })

    # ── Devices ───────────────────────────────────────────────────

    @app.route("/devices", methods=["GET"])
    def list_devices():
        devices = g.devices.get_user_devices(g.session.uid)
        return jsonify({"devices": devices, "count": len(devices)})

    @app.route("/devices", methods=["POST"])
    def add_device():
        """
        Claim a device for the caller.

        Expects either {"qr": "<scanned payload>"} or
        {"deviceId": ..., "name": ..., "location": ...}.
        """
        body = request.get_json(force=True, silent=True)
        if not body:
            return jsonify({"error": "No JSON body provided"}), 400

        name = body.get("name") or ""
        location = body.get("location") or ""
        if body.get("qr"):
            credentials = parse_qr_payload(body["qr"])
            device_id, device_key = credentials["deviceId"], credentials["deviceKey"]
        else:
            device_id, device_key = (body.get("deviceId") or "").strip(), body.get("deviceKey")

        errors = validate_manual_entry(device_id, name, location)
        if errors:
            return jsonify({"error": "Invalid device details", "fields": errors}), 400

        uid = g.session.uid
        record = build_device_record(uid, device_id, name, location, device_key)
        result = g.devices.add_device(uid, record)
        return jsonify({"status": "added", **result}), 201

    @app.route("/devices/<device_id>", methods=["GET"])
    def get_device(device_id):
        return jsonify({
            "data": g.devices.get_device_data(device_id),
            "info": g.devices.get_device_info(device_id),
        })

    @app.route("/devices/<device_id>", methods=["DELETE"])
    def remove_device(device_id):
        g.devices.remove_device(g.session.uid, device_id)
        return jsonify({"status": "removed", "device_id": device_id})

    @app.route("/devices/<device_id>/valve", methods=["POST"])
    def control_valve(device_id):
        body = request.get_json(force=True, silent=True) or {}
        g.devices.control_valve(device_id, body.get("open"))
        return jsonify({"status": "sent", "device_id": device_id,
                        "valve": config.VALVE_OPEN if body["open"] else config.VALVE_CLOSED})

    @app.route("/devices/<device_id>/reset", methods=["POST"])
    def reset_total(device_id):
        g.devices.reset_total_litres(device_id)
        return jsonify({"status": "sent", "device_id": device_id})

    @app.route("/devices/<device_id>/history", methods=["GET"])
    def history(device_id):
        time_range = request.args.get("range", config.DEFAULT_HISTORY_RANGE)
        entries = g.devices.get_device_history(device_id, time_range)
        return jsonify({"device_id": device_id, "range": time_range, "history": entries})

    @app.route("/devices/<device_id>/usage", methods=["GET"])
    def usage(device_id):
        period = request.args.get("period", PERIOD_DAY).upper()
        tz = request.args.get("tz", "UTC")
        if not g.devices.check_device_ownership(device_id)["is_owner"]:
            raise DeviceNotFoundError("Device not found or unauthorized")
        return jsonify(load_usage(database, device_id, period, tz=tz))

    # ── Alerts ────────────────────────────────────────────────────

    @app.route("/alerts", methods=["GET"])
    def list_alerts():
        limit = request.args.get("limit", config.ALERT_LIST_LIMIT, type=int)
        alerts = g.alerts.get_user_alerts(g.session.uid, limit)
        unread = sum(1 for alert in alerts if not alert.get("read"))
        return jsonify({"alerts": alerts, "unread": unread})

    @app.route("/alerts/<alert_id>/read", methods=["POST"])
    def mark_read(alert_id):
        g.alerts.mark_alert_as_read(alert_id, g.session.uid)
        return jsonify({"status": "read", "alert_id": alert_id})

    @app.route("/alerts/<alert_id>", methods=["DELETE"])
    def delete_alert(alert_id):
        g.alerts.delete_alert(alert_id, g.session.uid)
        return jsonify({"status": "deleted", "alert_id": alert_id})

    return app


if __name__ == "__main__":
    setup_logging()
    port = config.SERVICE_PORT
    logger.info(f"Starting monitor service on port {port}")
    create_app().run(host="0.0.0.0", port=port, debug=False)
