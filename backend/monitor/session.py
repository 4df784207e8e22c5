"""
session.py — Signed-In User and Auth-State Fan-Out
===================================================

The monitor acts for one user at a time. Services check the session before
touching user data, and subscribe to it so their listeners follow the user:
a sign-out or a switch to another account tears down the previous user's
subscriptions.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from .errors import NotAuthenticatedError

logger = logging.getLogger("monitor.session")


@dataclass(frozen=True)
class User:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class Session:
    """
    Holds the current user and notifies observers when it changes.

    Observers are called as `callback(previous_user, new_user)`; either may
    be None.
    """

    def __init__(self, user: User = None):
        self._user = user
        self._observers: list[Callable] = []
        self._lock = threading.RLock()

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    @property
    def uid(self) -> Optional[str]:
        return self._user.uid if self._user else None

    def require_user(self, uid: str = None) -> User:
        """
        Return the signed-in user.

        Args:
            uid: When given, the signed-in user must be this user.

        Raises:
            NotAuthenticatedError: No user, or a different user, is signed in.
        """
        user = self._user
        if user is None:
            raise NotAuthenticatedError("No authenticated user found")
        if uid is not None and user.uid != uid:
            raise NotAuthenticatedError("User ID mismatch")
        return user

    def is_current(self, uid: str) -> bool:
        user = self._user
        return user is not None and user.uid == uid

    def sign_in(self, user: User) -> None:
        with self._lock:
            previous, self._user = self._user, user
        if previous is not None and previous.uid != user.uid:
            logger.info(f"Different user signed in ({previous.uid} -> {user.uid})")
        else:
            logger.info(f"User signed in: {user.uid}")
        self._notify(previous, user)

    def sign_out(self) -> None:
        with self._lock:
            previous, self._user = self._user, None
        if previous is None:
            return
        logger.info(f"User signed out: {previous.uid}")
        self._notify(previous, None)

    def on_change(self, callback: Callable) -> Callable[[], None]:
        """Register an observer; returns a function that removes it."""
        with self._lock:
            self._observers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def _notify(self, previous: Optional[User], user: Optional[User]) -> None:
        if previous is not None and user is not None and previous.uid == user.uid:
            return
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(previous, user)
            except Exception as e:
                logger.error(f"Session observer failed: {e}", exc_info=True)
