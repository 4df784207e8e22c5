"""Tests for account operations with firebase_admin.auth patched out."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from firebase_admin import auth as firebase_auth, exceptions

from backend.monitor.auth import AuthService
from backend.monitor.errors import AuthError, NotAuthenticatedError, ValidationError
from backend.monitor.session import Session, User

from fakes import UID


def user_record(uid=UID, email="owner@example.com", name="Owner"):
    return SimpleNamespace(uid=uid, email=email, display_name=name, email_verified=True)


@pytest.fixture()
def fake_auth(monkeypatch):
    fake = MagicMock()
    for name in ("create_user", "verify_id_token", "get_user", "update_user",
                 "delete_user", "generate_password_reset_link"):
        monkeypatch.setattr(firebase_auth, name, getattr(fake, name))
    return fake


@pytest.fixture()
def service(database):
    return AuthService(database, Session())


# ========================== Sign-up ========================================


def test_sign_up_creates_profile_settings_and_session(database, service, fake_auth):
    fake_auth.create_user.return_value = user_record()

    user = service.sign_up("owner@example.com", "secret1", "Owner")

    assert user.uid == UID
    assert service.current_user() == user
    profile = database.get(f"users/{UID}/profile")
    assert profile["email"] == "owner@example.com"
    assert profile["displayName"] == profile["name"] == "Owner"
    settings = database.get(f"users/{UID}/settings")
    assert settings["notifications"]["leakAlerts"] is True
    assert settings["thresholds"]["lowBatteryThreshold"] == 20


@pytest.mark.parametrize("email, password", [("", "secret1"), ("a@b.c", ""), ("a@b.c", "12345")])
def test_sign_up_validation(service, fake_auth, email, password):
    with pytest.raises(ValidationError):
        service.sign_up(email, password)
    fake_auth.create_user.assert_not_called()


def test_sign_up_existing_email(service, fake_auth):
    fake_auth.create_user.side_effect = firebase_auth.EmailAlreadyExistsError(
        "exists", None, None)

    with pytest.raises(AuthError) as excinfo:
        service.sign_up("owner@example.com", "secret1")

    assert excinfo.value.code == "auth/email-already-in-use"
    assert excinfo.value.message == "An account with this email already exists"
    assert service.current_user() is None


def test_sign_up_invalid_email_and_network(service, fake_auth):
    fake_auth.create_user.side_effect = ValueError("Malformed email address string")
    with pytest.raises(AuthError) as excinfo:
        service.sign_up("nope", "secret1")
    assert excinfo.value.code == "auth/invalid-email"

    fake_auth.create_user.side_effect = exceptions.UnavailableError("offline")
    with pytest.raises(AuthError) as excinfo:
        service.sign_up("a@b.c", "secret1")
    assert excinfo.value.code == "auth/network-request-failed"


def test_sign_up_survives_profile_write_failure(database, service, fake_auth):
    fake_auth.create_user.return_value = user_record()
    database.fail_writes(f"users/{UID}")

    user = service.sign_up("owner@example.com", "secret1")

    assert user.uid == UID
    assert service.current_user() == user


# ========================== Sign-in ========================================


def test_sign_in_with_token(database, service, fake_auth):
    fake_auth.verify_id_token.return_value = {"uid": UID}
    fake_auth.get_user.return_value = user_record()

    user = service.sign_in_with_token("token")

    assert user == User(UID, "owner@example.com", "Owner", True)
    assert service.session.uid == UID
    assert "lastLoginTime" in database.get(f"users/{UID}/profile")


@pytest.mark.parametrize("error, code", [
    (firebase_auth.ExpiredIdTokenError("expired", None), "auth/id-token-expired"),
    (firebase_auth.InvalidIdTokenError("bad"), "auth/invalid-credential"),
    (firebase_auth.UserNotFoundError("gone"), "auth/user-not-found"),
])
def test_sign_in_errors(service, fake_auth, error, code):
    fake_auth.verify_id_token.side_effect = error

    with pytest.raises(AuthError) as excinfo:
        service.sign_in_with_token("token")

    assert excinfo.value.code == code
    assert service.session.uid is None


def test_sign_out(service, fake_auth):
    service.session.sign_in(User(UID))
    service.sign_out()
    assert service.current_user() is None


# ========================== Profile and account ============================


def test_update_user_profile(database, service, fake_auth):
    service.session.sign_in(User(UID, "owner@example.com", "Owner"))

    user = service.update_user_profile({"displayName": "New Name", "phoneNumber": "+1555",
                                        "location": None})

    assert user.display_name == "New Name"
    assert service.current_user().display_name == "New Name"
    fake_auth.update_user.assert_called_once_with(UID, display_name="New Name", app=None)
    profile = database.get(f"users/{UID}/profile")
    assert profile["name"] == "New Name"
    assert profile["phoneNumber"] == "+1555"
    assert "location" not in profile


def test_update_profile_requires_user(service, fake_auth):
    with pytest.raises(NotAuthenticatedError):
        service.update_user_profile({"displayName": "x"})


def test_password_reset_link(service, fake_auth):
    fake_auth.generate_password_reset_link.return_value = "https://reset/link"
    assert service.password_reset_link("owner@example.com") == "https://reset/link"

    fake_auth.generate_password_reset_link.side_effect = firebase_auth.UserNotFoundError("no")
    with pytest.raises(AuthError) as excinfo:
        service.password_reset_link("ghost@example.com")
    assert excinfo.value.code == "auth/user-not-found"


def test_delete_account_releases_devices(database, service, fake_auth):
    database.set("deviceOwners/AQ-1", UID)
    database.set("deviceOwners/AQ-2", "someone-else")
    database.set(f"users/{UID}/claimedDevices", {"AQ-1": True, "AQ-2": True})
    database.set(f"alerts/{UID}/a1", {"title": "x"})
    service.session.sign_in(User(UID))

    service.delete_account()

    assert database.get("deviceOwners/AQ-1") is None
    assert database.get("deviceOwners/AQ-2") == "someone-else"
    assert database.get(f"users/{UID}") is None
    assert database.get(f"alerts/{UID}") is None
    fake_auth.delete_user.assert_called_once_with(UID, app=None)
    assert service.current_user() is None
