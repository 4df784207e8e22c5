"""
auth.py — Account Operations
=============================

Account management through `firebase_admin.auth`. Passwords are only ever
handled at sign-up; afterwards a user proves who they are with a Firebase
ID token obtained by the client SDK, which is verified here and turned
into the session user.

New accounts get a profile and default settings:

    users/<uid>/profile   { userId, email, displayName, name,
                            createdAt, updatedAt, lastLoginTime }
    users/<uid>/settings  { notifications: {...}, thresholds: {...} }
"""

import logging

from firebase_admin import auth as firebase_auth, exceptions

from . import config
from .database import RealtimeDatabase
from .errors import AuthError, ValidationError
from .session import Session, User
from .utils import format_path, iso_now

logger = logging.getLogger("monitor.auth")

# User-facing messages per error code
ERROR_MESSAGES = {
    "auth/email-already-in-use": "An account with this email already exists",
    "auth/user-not-found": "No account found with this email address",
    "auth/invalid-email": "Invalid email address",
    "auth/weak-password": "Password is too weak. Please choose a stronger password",
    "auth/user-disabled": "This account has been disabled",
    "auth/invalid-credential": "Invalid email or password",
    "auth/id-token-expired": "Your session has expired. Please sign in again",
    "auth/id-token-revoked": "Your session was revoked. Please sign in again",
    "auth/network-request-failed": "Network error. Please check your connection",
}


def auth_error(code: str, fallback: str = "Authentication failed") -> AuthError:
    return AuthError(ERROR_MESSAGES.get(code, fallback), code=code)


def _user_from_record(record) -> User:
    return User(
        uid=record.uid,
        email=record.email,
        display_name=record.display_name,
        email_verified=bool(record.email_verified),
    )


class AuthService:
    """
    Sign-up, token sign-in and profile management.

    Attributes:
        database (RealtimeDatabase): Database adapter.
        session (Session): Session updated on sign-in / sign-out.
        app: firebase_admin App (None for the default app).
    """

    def __init__(self, database: RealtimeDatabase, session: Session, app=None):
        self.database = database
        self.session = session
        self.app = app

    def sign_up(self, email: str, password: str, display_name: str = "") -> User:
        """
        Create an account, its profile and default settings, and sign in.

        Raises:
            ValidationError: Missing email/password or password too short.
            AuthError: The account could not be created.
        """
        if not email or not password:
            raise ValidationError("Email and password are required")
        if len(password) < config.MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least "
                                  f"{config.MIN_PASSWORD_LENGTH} characters long")

        logger.info(f"Creating user account: {email}")
        try:
            record = firebase_auth.create_user(
                email=email, password=password,
                display_name=display_name or None, app=self.app)
        except firebase_auth.EmailAlreadyExistsError:
            raise auth_error("auth/email-already-in-use")
        except ValueError as e:
            code = "auth/weak-password" if "password" in str(e).lower() else "auth/invalid-email"
            raise auth_error(code)
        except exceptions.UnavailableError:
            raise auth_error("auth/network-request-failed")
        except exceptions.FirebaseError as e:
            raise AuthError(str(e) or "Failed to create account", code="auth/unknown")

        user = _user_from_record(record)
        logger.info(f"User account created: {user.uid}")

        now = iso_now()
        try:
            self.database.set(format_path(config.USER_PROFILE_PATH, uid=user.uid), {
                "userId": user.uid,
                "email": user.email,
                "displayName": display_name or "",
                "name": display_name or "",
                "createdAt": now,
                "updatedAt": now,
                "lastLoginTime": now,
            })
            self.database.set(format_path(config.USER_SETTINGS_PATH, uid=user.uid), {
                "notifications": {**config.DEFAULT_NOTIFICATION_SETTINGS, "updatedAt": now},
                "thresholds": dict(config.DEFAULT_THRESHOLD_SETTINGS),
                "updatedAt": now,
            })
        except exceptions.FirebaseError as e:
            # The account exists; a missing profile is recreated on next edit.
            logger.warning(f"Failed to create user profile in database: {e}")

        self.session.sign_in(user)
        return user

    def sign_in_with_token(self, id_token: str) -> User:
        """
        Verify a Firebase ID token and make its user the session user.

        Raises:
            AuthError: The token is invalid, expired, revoked, or the user
                no longer exists.
        """
        if not id_token:
            raise ValidationError("ID token is required")
        try:
            claims = firebase_auth.verify_id_token(id_token, app=self.app)
            record = firebase_auth.get_user(claims["uid"], app=self.app)
        except firebase_auth.ExpiredIdTokenError:
            raise auth_error("auth/id-token-expired")
        except firebase_auth.RevokedIdTokenError:
            raise auth_error("auth/id-token-revoked")
        except firebase_auth.UserDisabledError:
            raise auth_error("auth/user-disabled")
        except firebase_auth.UserNotFoundError:
            raise auth_error("auth/user-not-found")
        except (firebase_auth.InvalidIdTokenError, ValueError):
            raise auth_error("auth/invalid-credential")
        except exceptions.UnavailableError:
            raise auth_error("auth/network-request-failed")

        user = _user_from_record(record)
        try:
            self.database.update(format_path(config.USER_PROFILE_PATH, uid=user.uid), {
                "lastLoginTime": iso_now(),
                "updatedAt": iso_now(),
            })
        except exceptions.FirebaseError as e:
            logger.warning(f"Failed to update last login time: {e}")

        self.session.sign_in(user)
        logger.info(f"User signed in: {user.uid}")
        return user

    def sign_out(self) -> None:
        self.session.sign_out()

    def current_user(self) -> User | None:
        return self.session.current_user

    def update_user_profile(self, updates: dict) -> User:
        """
        Update the signed-in user's profile.

        `displayName` is also written to the auth record. Fields set to None
        are ignored.
        """
        user = self.session.require_user()
        clean = {k: v for k, v in (updates or {}).items() if v is not None}
        if not clean:
            return user

        if "displayName" in clean:
            firebase_auth.update_user(user.uid, display_name=clean["displayName"] or None,
                                      app=self.app)
            clean["name"] = clean["displayName"]
            user = User(user.uid, user.email, clean["displayName"], user.email_verified)

        clean["updatedAt"] = iso_now()
        self.database.update(format_path(config.USER_PROFILE_PATH, uid=user.uid), clean)
        self.session.sign_in(user)
        logger.info(f"Profile updated for user {user.uid}")
        return user

    def password_reset_link(self, email: str) -> str:
        if not email:
            raise ValidationError("Email is required")
        try:
            return firebase_auth.generate_password_reset_link(email, app=self.app)
        except firebase_auth.UserNotFoundError:
            raise auth_error("auth/user-not-found")
        except ValueError:
            raise auth_error("auth/invalid-email")

    def delete_account(self) -> None:
        """
        Delete the signed-in user's data, release their devices and remove
        the auth record. Ends the session.
        """
        user = self.session.require_user()
        uid = user.uid

        claimed = self.database.get(format_path(config.CLAIMED_DEVICES_PATH, uid=uid)) or {}
        for device_id in claimed:
            self.database.transaction(
                format_path(config.DEVICE_OWNER_PATH, device_id=device_id),
                lambda current: None if current == uid else current)

        self.database.delete(format_path(config.USER_ALERTS_PATH, uid=uid))
        self.database.delete(format_path(config.USER_ROOT_PATH, uid=uid))
        firebase_auth.delete_user(uid, app=self.app)
        self.session.sign_out()
        logger.info(f"Account deleted: {uid} ({len(claimed)} devices released)")
