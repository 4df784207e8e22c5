"""
In-memory stand-in for RealtimeDatabase.

Same interface as backend.monitor.database.RealtimeDatabase, backed by a
plain nested dict. Writes go through apply_event so that storage follows
the database's rules (no empty containers, multi-path updates), and
listeners are delivered synchronously on every change that touches their
path.
"""

import copy
import itertools

from firebase_admin import exceptions

from backend.monitor.database import Subscription, apply_event


def _segments(path):
    return [s for s in (path or "").split("/") if s]


def _overlaps(a, b):
    a, b = _segments(a), _segments(b)
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class _Registration:
    def __init__(self, database, listener):
        self._database = database
        self._listener = listener

    def close(self):
        if self._listener in self._database._listeners:
            self._database._listeners.remove(self._listener)


class _Listener:
    def __init__(self, path, on_value, on_error):
        self.path = path
        self.on_value = on_value
        self.on_error = on_error
        self.last = object()


class InMemoryDatabase:
    url = "memory://test"

    def __init__(self, data=None):
        self.data = copy.deepcopy(data)
        self.writes = []
        self._listeners = []
        self._denied = set()
        self._failing = set()
        self._ids = itertools.count(1)

    # ── Test controls ─────────────────────────────────────────────

    def deny(self, path):
        """Make listen() on `path` fail with a permission error."""
        self._denied.add(path)

    def fail_writes(self, path):
        """Make writes under `path` raise a FirebaseError."""
        self._failing.add(path)

    @property
    def listener_paths(self):
        return [listener.path for listener in self._listeners]

    # ── Interface ─────────────────────────────────────────────────

    def initialize(self):
        pass

    def get(self, path):
        node = self.data
        for segment in _segments(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return copy.deepcopy(node)

    def _write(self, path, event_type, value):
        for failing in self._failing:
            if _overlaps(failing, path):
                raise exceptions.UnavailableError(f"write to {path} failed")
        self.writes.append((event_type, path, copy.deepcopy(value)))
        self.data = apply_event(self.data, event_type, path, value)
        self._deliver()

    def set(self, path, value):
        self._write(path, "put", value)

    def update(self, path, values):
        if not values:
            return
        self._write(path, "patch", values)

    def delete(self, path):
        self._write(path, "put", None)

    def push(self, path, value):
        key = f"-N{next(self._ids):06d}"
        self.set(f"{path}/{key}", value)
        return key

    def transaction(self, path, update_fn):
        value = update_fn(self.get(path))
        self.set(path, value)
        return copy.deepcopy(value)

    def query(self, path, order_by, start_at=None, end_at=None, limit_to_last=None):
        children = self.get(path) or {}
        rows = []
        for key, child in children.items():
            value = child.get(order_by) if isinstance(child, dict) else None
            if start_at is not None and (value is None or value < start_at):
                continue
            if end_at is not None and (value is None or value > end_at):
                continue
            rows.append((value, key, child))
        rows.sort(key=lambda row: (row[0] is not None, row[0] if row[0] is not None else 0,
                                   row[1]))
        if limit_to_last is not None:
            rows = rows[-limit_to_last:]
        return {key: child for _, key, child in rows}

    def listen(self, path, on_value, on_error=None):
        if path in self._denied:
            error = exceptions.PermissionDeniedError("Permission denied")
            if on_error is not None:
                on_error(error)
            return Subscription(path)
        listener = _Listener(path, on_value, on_error)
        self._listeners.append(listener)
        self._notify(listener)
        return Subscription(path, _Registration(self, listener))

    # ── Delivery ──────────────────────────────────────────────────

    def _deliver(self):
        for listener in list(self._listeners):
            if listener in self._listeners:
                self._notify(listener)

    def _notify(self, listener):
        value = self.get(listener.path)
        if value == listener.last:
            return
        listener.last = copy.deepcopy(value)
        try:
            listener.on_value(value)
        except Exception as e:
            if listener.on_error is not None:
                listener.on_error(e)


UID = "user-1"
OTHER_UID = "user-2"


def seed_device(database, device_id, uid=UID, data=None, info=None):
    """Claim `device_id` for `uid` and write its data / info nodes."""
    database.set(f"deviceOwners/{device_id}", uid)
    database.set(f"users/{uid}/claimedDevices/{device_id}", True)
    database.set(f"users/{uid}/devices/{device_id}",
                 {"deviceId": device_id, "name": f"Meter {device_id}"})
    if data is not None:
        database.set(f"devices/{device_id}/data", data)
    if info is not None:
        database.set(f"devices/{device_id}/info", info)
