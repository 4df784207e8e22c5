"""
database.py — Firebase Realtime Database Adapter
=================================================

Thin wrapper over `firebase_admin.db` that every service talks to. The
wrapper keeps the rest of the code independent of the SDK's reference and
query objects and adds the one thing the SDK does not offer: full-value
snapshots for streaming listeners.

firebase_admin streams a subtree as a sequence of events:
    put   at "/"          — the complete current value (first event)
    put   at "/a/b"       — replace (or delete, when data is None) one child
    patch at "/a"         — merge several children under "/a"

Consumers, however, reason about the whole node (like the JS SDK's
onValue). `listen()` therefore keeps a local copy of the subscribed
subtree, merges every event into it with `apply_event()`, and hands the
merged value to the callback.
"""

import copy
import logging
import threading

import firebase_admin
from firebase_admin import credentials, db as firebase_db, exceptions

from . import config

logger = logging.getLogger("monitor.database")


# ── Event merging ─────────────────────────────────────────────────

def _split(path: str) -> list[str]:
    return [segment for segment in (path or "").split("/") if segment]


def _as_mapping(node) -> dict:
    """View a node as a dict of children (lists come back for numeric keys)."""
    if isinstance(node, dict):
        return dict(node)
    if isinstance(node, list):
        return {str(i): v for i, v in enumerate(node) if v is not None}
    return {}


def _normalize(value):
    # The database has no empty containers: {} and [] read back as null.
    if value is None:
        return None
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = _normalize(child)
            if child is not None:
                cleaned[key] = child
        return cleaned or None
    if isinstance(value, list):
        return _normalize(_as_mapping(value))
    return value


def _put(node, segments: list[str], value):
    if not segments:
        return _normalize(copy.deepcopy(value))
    head, rest = segments[0], segments[1:]
    children = _as_mapping(node)
    child = _put(children.get(head), rest, value)
    if child is None:
        children.pop(head, None)
    else:
        children[head] = child
    return children or None


def apply_event(current, event_type: str, path: str, data):
    """
    Merge one streamed database event into a locally cached value.

    Args:
        current: Cached value of the subscribed node (None when empty).
        event_type: "put" or "patch". Anything else leaves the value as is.
        path: Event path relative to the subscribed node ("/" for the node).
        data: Event payload.

    Returns:
        The new cached value. `current` is never mutated.
    """
    segments = _split(path)
    if event_type == "put":
        return _put(current, segments, data)
    if event_type == "patch":
        result = current
        for key, value in (data or {}).items():
            result = _put(result, segments + _split(key), value)
        return result
    logger.debug(f"Ignoring '{event_type}' event at {path}")
    return current


# ── Subscriptions ─────────────────────────────────────────────────

class Subscription:
    """
    Handle for one live listener.

    Attributes:
        path (str): Database path being watched.
    """

    def __init__(self, path: str, registration=None):
        self.path = path
        self._registration = registration
        self._closed = registration is None
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the stream. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            registration, self._registration = self._registration, None
        if registration is not None:
            registration.close()
            logger.debug(f"Listener closed: {self.path}")


class SnapshotState:
    """Local copy of a subscribed subtree, updated event by event."""

    def __init__(self):
        self.value = None
        self._lock = threading.Lock()

    def apply(self, event_type: str, path: str, data):
        with self._lock:
            self.value = apply_event(self.value, event_type, path, data)
            return copy.deepcopy(self.value)


# ── Database adapter ──────────────────────────────────────────────

class RealtimeDatabase:
    """
    Path-addressed access to the Firebase Realtime Database.

    Usage:
        database = RealtimeDatabase()
        database.initialize()
        owner = database.get("deviceOwners/AQ-1001")
    """

    def __init__(self, url: str = None, credentials_path: str = None,
                 app=None):
        self.url = url or config.FIREBASE_DATABASE_URL
        self.credentials_path = credentials_path or config.FIREBASE_CREDENTIALS_PATH
        self._app = app

    def initialize(self) -> None:
        """
        Initialize the default firebase_admin app if nobody has yet.

        Raises:
            FileNotFoundError: When no app exists and the service account
                key is missing.
        """
        if self._app is not None or firebase_admin._apps:
            return
        logger.info(f"Initializing Firebase app for {self.url}")
        cred = credentials.Certificate(self.credentials_path)
        self._app = firebase_admin.initialize_app(cred, {"databaseURL": self.url})

    def reference(self, path: str = "/"):
        return firebase_db.reference(path, app=self._app)

    # ── Reads and writes ──────────────────────────────────────────

    def get(self, path: str):
        return self.reference(path).get()

    def set(self, path: str, value) -> None:
        self.reference(path).set(value)

    def update(self, path: str, values: dict) -> None:
        if not values:
            return
        self.reference(path).update(values)

    def delete(self, path: str) -> None:
        self.reference(path).delete()

    def push(self, path: str, value) -> str:
        """Append `value` under a generated chronological key and return it."""
        return self.reference(path).push(value).key

    def transaction(self, path: str, update_fn):
        """
        Atomically read-modify-write a node.

        Returns:
            The value committed by the transaction.
        """
        return self.reference(path).transaction(update_fn)

    def query(self, path: str, order_by: str, start_at=None, end_at=None,
              limit_to_last: int = None) -> dict:
        """
        Run an ordered child query.

        Returns:
            Ordered dict of key -> child value (empty when nothing matches).
        """
        query = self.reference(path).order_by_child(order_by)
        if start_at is not None:
            query = query.start_at(start_at)
        if end_at is not None:
            query = query.end_at(end_at)
        if limit_to_last is not None:
            query = query.limit_to_last(limit_to_last)
        return query.get() or {}

    # ── Streaming ─────────────────────────────────────────────────

    def listen(self, path: str, on_value, on_error=None) -> Subscription:
        """
        Watch a node and receive its full value on every change.

        Args:
            path: Database path to watch.
            on_value: Called with the merged node value (None when empty).
                Runs on the SDK's listener thread.
            on_error: Optional, called with the exception when the stream
                cannot be opened or `on_value` raises.

        Returns:
            Subscription; closed already when the stream could not open.
        """
        state = SnapshotState()

        def handle(event):
            try:
                value = state.apply(event.event_type, event.path, event.data)
                on_value(value)
            except Exception as e:
                logger.error(f"Listener callback failed for {path}: {e}",
                             exc_info=True)
                if on_error is not None:
                    on_error(e)

        try:
            registration = self.reference(path).listen(handle)
        except exceptions.FirebaseError as e:
            logger.error(f"Cannot listen to {path}: {e}")
            if on_error is not None:
                on_error(e)
            return Subscription(path)

        logger.debug(f"Listening to {path}")
        return Subscription(path, registration)
