"""
listeners.py — Listener Registry
=================================

Bookkeeping for live database subscriptions. Every listener a service opens
is registered under a deterministic key so that:

    - opening the same listener twice replaces the first one,
    - a user's listeners can be dropped together on sign-out or user switch,
    - a device's listeners can be dropped when the device is removed,
    - everything can be torn down on shutdown.

Keys look like "devices_<uid>" or "device_data_<uid>_<deviceId>".
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("monitor.listeners")


def listener_key(kind: str, user_id: str, device_id: str = None) -> str:
    """Build a registry key for a listener."""
    key = f"{kind}_{user_id}"
    if device_id:
        key = f"{key}_{device_id}"
    return key


@dataclass
class ListenerEntry:
    key: str
    cleanup: Callable[[], None]
    kind: str
    user_id: Optional[str] = None
    device_id: Optional[str] = None


class ListenerRegistry:
    """
    Thread-safe map of listener key -> cleanup function.

    Args:
        name: Label used in log lines ("device", "alert", …).
    """

    def __init__(self, name: str = "listener"):
        self.name = name
        self._entries: dict[str, ListenerEntry] = {}
        self._lock = threading.RLock()

    def register(self, key: str, cleanup: Callable[[], None], kind: str,
                 user_id: str = None, device_id: str = None) -> Callable[[], None]:
        """
        Store a listener, replacing any listener registered under `key`.

        Returns:
            A function that removes exactly this listener.
        """
        entry = ListenerEntry(key, cleanup, kind, user_id, device_id)
        with self._lock:
            previous = self._entries.pop(key, None)
            self._entries[key] = entry
        if previous is not None:
            self._run_cleanup(previous)
        logger.debug(f"{self.name} listener established: {key}")

        def unregister():
            with self._lock:
                if self._entries.get(key) is not entry:
                    return
                del self._entries[key]
            self._run_cleanup(entry)

        return unregister

    def cleanup(self, key: str) -> bool:
        """
        Remove and close one listener.

        Returns:
            True if a listener was registered under `key`.
        """
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._run_cleanup(entry)
        return True

    def cleanup_later(self, key: str) -> bool:
        """
        Unregister a listener now and close it on a helper thread.

        For use inside a listener's own callback: the SDK joins the listener
        thread on close, which cannot happen from that same thread.
        """
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        threading.Thread(target=self._run_cleanup, args=(entry,),
                         name=f"cleanup-{key}", daemon=True).start()
        return True

    def cleanup_where(self, predicate: Callable[[ListenerEntry], bool]) -> int:
        with self._lock:
            doomed = [e for e in self._entries.values() if predicate(e)]
            for entry in doomed:
                del self._entries[entry.key]
        for entry in doomed:
            self._run_cleanup(entry)
        return len(doomed)

    def cleanup_user(self, user_id: str) -> int:
        """Close every listener opened on behalf of `user_id`."""
        count = self.cleanup_where(lambda e: e.user_id == user_id)
        logger.info(f"Cleaned up {count} {self.name} listeners for user {user_id}")
        return count

    def cleanup_device(self, device_id: str) -> int:
        """Close every listener watching `device_id`."""
        return self.cleanup_where(lambda e: e.device_id == device_id)

    def cleanup_all(self) -> int:
        count = self.cleanup_where(lambda e: True)
        logger.info(f"Cleaned up all {self.name} listeners ({count} active)")
        return count

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def active(self) -> list[dict]:
        """Describe the registered listeners."""
        with self._lock:
            entries = list(self._entries.values())
        return [
            {
                "key": e.key,
                "user_id": e.user_id,
                "device_id": e.device_id or "all",
                "type": e.kind,
            }
            for e in entries
        ]

    def status(self) -> dict:
        with self._lock:
            keys = list(self._entries)
        return {"total_listeners": len(keys), "listeners": keys}

    def _run_cleanup(self, entry: ListenerEntry) -> None:
        # One failing cleanup must not leave the others running.
        try:
            entry.cleanup()
        except Exception as e:
            logger.error(f"Error cleaning up {self.name} listener {entry.key}: {e}")
