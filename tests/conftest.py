"""
Shared test fixtures for the monitor test suite.

Provides:
- In-memory realtime database (tests/fakes.py) per test
- A session with a signed-in user
- Service instances wired to the in-memory database

Usage:
    def test_example(database, device_service):
        device_service.add_device("user-1", {"deviceId": "AQ-1001"})
        assert database.get("deviceOwners/AQ-1001") == "user-1"
"""

import logging
import os
import sys

# Ensure repository root is on sys.path so tests can import application modules
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from backend.monitor.alerts import AlertService
from backend.monitor.devices import DeviceService
from backend.monitor.session import Session, User

from fakes import UID, InMemoryDatabase

# Keep test output clean
logging.getLogger("monitor").setLevel(logging.WARNING)


# ========================== Database Fixtures ==============================


@pytest.fixture()
def database():
    """Fresh in-memory database for every test."""
    return InMemoryDatabase()


# ========================== Session Fixtures ===============================


@pytest.fixture()
def user():
    return User(uid=UID, email="owner@example.com", display_name="Owner")


@pytest.fixture()
def session(user):
    """Session with `user` signed in."""
    return Session(user)


# ========================== Service Fixtures ===============================


@pytest.fixture()
def alert_service(database, session):
    return AlertService(database, session)


@pytest.fixture()
def device_service(database, session):
    return DeviceService(database, session)
