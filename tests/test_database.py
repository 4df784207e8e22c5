"""Tests for event merging and the firebase_admin.db adapter."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from firebase_admin import exceptions

from backend.monitor.database import RealtimeDatabase, Subscription, apply_event


def event(event_type, path, data):
    return SimpleNamespace(event_type=event_type, path=path, data=data)


# ========================== apply_event ====================================


def test_put_at_root_replaces_value():
    assert apply_event({"a": 1}, "put", "/", {"b": 2}) == {"b": 2}


def test_put_at_child_path_replaces_only_that_child():
    current = {"flowRate": 1.0, "valveState": "OPEN"}
    result = apply_event(current, "put", "/valveState", "CLOSED")
    assert result == {"flowRate": 1.0, "valveState": "CLOSED"}
    assert current["valveState"] == "OPEN"


def test_put_none_deletes_child_and_prunes_empty_parents():
    current = {"AQ-1": {"x": 1}, "AQ-2": {"y": 2}}
    assert apply_event(current, "put", "/AQ-1/x", None) == {"AQ-2": {"y": 2}}
    assert apply_event({"AQ-1": True}, "put", "/AQ-1", None) is None


def test_patch_merges_children():
    current = {"flowRate": 1.0, "totalLitres": 10.0}
    result = apply_event(current, "patch", "/", {"flowRate": 2.5, "batteryPercentage": 80})
    assert result == {"flowRate": 2.5, "totalLitres": 10.0, "batteryPercentage": 80}


def test_patch_with_nested_keys_at_sub_path():
    current = {"d1": {"name": "Kitchen"}}
    result = apply_event(current, "patch", "/d1", {"wifiInfo/rssi": -60, "name": None})
    assert result == {"d1": {"wifiInfo": {"rssi": -60}}}


def test_put_into_empty_value_creates_path():
    assert apply_event(None, "put", "/a/b", 5) == {"a": {"b": 5}}


def test_empty_containers_read_back_as_none():
    assert apply_event({"a": 1}, "put", "/", {}) is None


def test_list_values_become_keyed_children():
    assert apply_event(None, "put", "/", [None, "x"]) == {"1": "x"}


def test_unknown_event_type_is_ignored():
    assert apply_event({"a": 1}, "keep", "/", None) == {"a": 1}


# ========================== Subscription ===================================


def test_subscription_close_is_idempotent():
    registration = MagicMock()
    subscription = Subscription("devices/AQ-1/data", registration)
    assert not subscription.closed
    subscription.close()
    subscription.close()
    assert subscription.closed
    registration.close.assert_called_once()


def test_subscription_without_registration_starts_closed():
    assert Subscription("x").closed


# ========================== RealtimeDatabase ===============================


@pytest.fixture()
def reference():
    with patch("backend.monitor.database.firebase_db.reference") as factory:
        ref = MagicMock()
        factory.return_value = ref
        ref.factory = factory
        yield ref


def test_reads_and_writes_go_through_reference(reference):
    database = RealtimeDatabase(app=MagicMock())
    reference.get.return_value = {"a": 1}

    assert database.get("devices/AQ-1/data") == {"a": 1}
    database.set("devices/AQ-1/commands/valveControl", True)
    database.update("users/u1/profile", {"name": "N"})
    database.delete("alerts/u1/x")

    reference.set.assert_called_once_with(True)
    reference.update.assert_called_once_with({"name": "N"})
    reference.delete.assert_called_once()
    paths = [c.args[0] for c in reference.factory.call_args_list]
    assert paths == ["devices/AQ-1/data", "devices/AQ-1/commands/valveControl",
                     "users/u1/profile", "alerts/u1/x"]


def test_empty_update_is_skipped(reference):
    RealtimeDatabase(app=MagicMock()).update("users/u1", {})
    reference.update.assert_not_called()


def test_push_returns_generated_key(reference):
    reference.push.return_value = SimpleNamespace(key="-Nabc")
    assert RealtimeDatabase(app=MagicMock()).push("alerts/u1", {"t": 1}) == "-Nabc"


def test_query_chains_ordering_and_limits(reference):
    ordered = reference.order_by_child.return_value
    ordered.start_at.return_value = ordered
    ordered.end_at.return_value = ordered
    ordered.limit_to_last.return_value = ordered
    ordered.get.return_value = None

    result = RealtimeDatabase(app=MagicMock()).query(
        "history/AQ-1", "timestamp", start_at=1, end_at=2, limit_to_last=10)

    assert result == {}
    reference.order_by_child.assert_called_once_with("timestamp")
    ordered.start_at.assert_called_once_with(1)
    ordered.end_at.assert_called_once_with(2)
    ordered.limit_to_last.assert_called_once_with(10)


def test_listen_delivers_merged_snapshots(reference):
    handlers = []
    reference.listen.side_effect = lambda handler: handlers.append(handler) or MagicMock()
    values = []

    subscription = RealtimeDatabase(app=MagicMock()).listen(
        "devices/AQ-1/data", values.append)
    handle = handlers[0]
    handle(event("put", "/", {"flowRate": 1.0, "valveState": "OPEN"}))
    handle(event("put", "/flowRate", 3.0))
    handle(event("patch", "/", {"valveState": "CLOSED"}))

    assert values == [
        {"flowRate": 1.0, "valveState": "OPEN"},
        {"flowRate": 3.0, "valveState": "OPEN"},
        {"flowRate": 3.0, "valveState": "CLOSED"},
    ]
    assert not subscription.closed


def test_listen_reports_callback_failures(reference):
    handlers = []
    reference.listen.side_effect = lambda handler: handlers.append(handler) or MagicMock()
    errors = []

    def explode(value):
        raise RuntimeError("boom")

    RealtimeDatabase(app=MagicMock()).listen("x", explode, errors.append)
    handlers[0](event("put", "/", 1))

    assert len(errors) == 1
    assert isinstance(errors[0], RuntimeError)


def test_listen_setup_failure_returns_closed_subscription(reference):
    reference.listen.side_effect = exceptions.PermissionDeniedError("denied")
    errors = []

    subscription = RealtimeDatabase(app=MagicMock()).listen("x", lambda v: None, errors.append)

    assert subscription.closed
    assert isinstance(errors[0], exceptions.PermissionDeniedError)
