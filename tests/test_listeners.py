"""Tests for the listener registry."""

import threading

from backend.monitor.listeners import ListenerRegistry, listener_key


class Closer:
    def __init__(self):
        self.calls = 0
        self.event = threading.Event()

    def __call__(self):
        self.calls += 1
        self.event.set()


def test_listener_key_format():
    assert listener_key("devices", "u1") == "devices_u1"
    assert listener_key("device_data", "u1", "AQ-1") == "device_data_u1_AQ-1"


def test_register_replaces_existing_key():
    registry = ListenerRegistry("test")
    first, second = Closer(), Closer()

    registry.register("k", first, "devices", user_id="u1")
    registry.register("k", second, "devices", user_id="u1")

    assert first.calls == 1
    assert second.calls == 0
    assert len(registry) == 1


def test_unregister_only_removes_its_own_entry():
    registry = ListenerRegistry("test")
    first, second = Closer(), Closer()
    unregister_first = registry.register("k", first, "devices")
    registry.register("k", second, "devices")

    unregister_first()

    assert "k" in registry
    assert second.calls == 0


def test_cleanup_by_user_and_device():
    registry = ListenerRegistry("test")
    closers = {name: Closer() for name in ("a", "b", "c")}
    registry.register("a", closers["a"], "device_data", user_id="u1", device_id="AQ-1")
    registry.register("b", closers["b"], "device_info", user_id="u1", device_id="AQ-2")
    registry.register("c", closers["c"], "devices", user_id="u2")

    assert registry.cleanup_device("AQ-1") == 1
    assert registry.cleanup_user("u1") == 1
    assert [e["key"] for e in registry.active()] == ["c"]
    assert closers["a"].calls == closers["b"].calls == 1
    assert closers["c"].calls == 0


def test_failing_cleanup_does_not_stop_the_rest():
    registry = ListenerRegistry("test")
    survivor = Closer()

    def broken():
        raise RuntimeError("already gone")

    registry.register("broken", broken, "devices")
    registry.register("ok", survivor, "devices")

    assert registry.cleanup_all() == 2
    assert survivor.calls == 1
    assert len(registry) == 0


def test_cleanup_later_unregisters_immediately_and_closes_in_background():
    registry = ListenerRegistry("test")
    closer = Closer()
    registry.register("k", closer, "alerts", user_id="u1")

    assert registry.cleanup_later("k") is True
    assert "k" not in registry
    assert closer.event.wait(timeout=2)
    assert registry.cleanup_later("k") is False


def test_active_and_status_describe_entries():
    registry = ListenerRegistry("test")
    registry.register("devices_u1", Closer(), "devices", user_id="u1")

    assert registry.active() == [
        {"key": "devices_u1", "user_id": "u1", "device_id": "all", "type": "devices"}
    ]
    assert registry.status() == {"total_listeners": 1, "listeners": ["devices_u1"]}
