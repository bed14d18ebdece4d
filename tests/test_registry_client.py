"""
Unit tests for the embedded registry client.
"""

import time

import pytest

from waypoint.client import RegistryClient
from waypoint.errors import (
    DuplicateInstanceError,
    RegistrationError,
    RegistryUnavailableError,
    StaleRegistryWarning,
)
from waypoint.registry import InstanceStatus, RegistryStore

from conftest import FakeClock, make_instance


class FlakyRegistry:
    """Wraps a store and fails the first *failures* calls of each operation."""

    def __init__(self, store, failures=0):
        self.store = store
        self.failures = failures
        self.calls = {}
        self.down = False

    def _maybe_fail(self, op):
        self.calls[op] = self.calls.get(op, 0) + 1
        if self.down or self.calls[op] <= self.failures:
            raise RegistryUnavailableError(f"{op} failed")

    def register(self, instance):
        self._maybe_fail("register")
        return self.store.register(instance)

    def heartbeat(self, instance_id):
        self._maybe_fail("heartbeat")
        return self.store.heartbeat(instance_id)

    def deregister(self, instance_id):
        self._maybe_fail("deregister")
        return self.store.deregister(instance_id)

    def list_instances(self, service_name):
        self._maybe_fail("list_instances")
        return self.store.list_instances(service_name)


class RejectingRegistry(FlakyRegistry):
    """Answers the first *rejections* calls of *op* with a bare client error."""

    def __init__(self, store, op, rejections):
        super().__init__(store)
        self.op = op
        self.rejections = rejections

    def _maybe_fail(self, op):
        super()._maybe_fail(op)
        if op == self.op and self.calls[op] <= self.rejections:
            raise ValueError("HTTP 400")


class TestRegistration:

    def test_retries_with_exponential_backoff(self, store):
        sleeps = []
        client = RegistryClient(FlakyRegistry(store, failures=2), make_instance(),
                                sleep=sleeps.append)

        assert client.register() == "user-a"
        assert sleeps == [0.5, 1.0]
        assert store.get_instance("user-a") is not None

    def test_fails_fast_after_capped_attempts(self, store):
        sleeps = []
        client = RegistryClient(FlakyRegistry(store, failures=100), make_instance(),
                                register_attempts=5, register_max_backoff=3,
                                sleep=sleeps.append)

        with pytest.raises(RegistrationError) as excinfo:
            client.register()
        assert sleeps == [0.5, 1.0, 2.0, 3]
        assert isinstance(excinfo.value.__cause__, RegistryUnavailableError)

    def test_duplicate_is_not_retried(self, store):
        store.register(make_instance(host="10.9.9.9"))
        store.heartbeat("user-a")
        sleeps = []
        client = RegistryClient(store, make_instance(), sleep=sleeps.append)

        with pytest.raises(RegistrationError) as excinfo:
            client.register()
        assert sleeps == []
        assert isinstance(excinfo.value.__cause__, DuplicateInstanceError)

    def test_rejection_is_not_retried(self, store):
        sleeps = []
        client = RegistryClient(RejectingRegistry(store, "register", 1), make_instance(),
                                sleep=sleeps.append)

        with pytest.raises(RegistrationError) as excinfo:
            client.register()
        assert sleeps == []
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_start_raises_when_registration_fails(self, store):
        client = RegistryClient(FlakyRegistry(store, failures=100), make_instance(),
                                register_attempts=2, sleep=lambda s: None)
        with pytest.raises(RegistrationError):
            client.start()

    def test_heartbeat_reregisters_after_eviction(self, store):
        client = RegistryClient(store, make_instance())
        client.register()
        store.deregister("user-a")

        client.heartbeat_once()

        assert store.get_instance("user-a").status is InstanceStatus.UP


class TestResolve:

    def test_resolve_serves_cache_until_refresh(self, store):
        store.register(make_instance(instance_id="user-a"))
        store.heartbeat("user-a")
        client = RegistryClient(store)

        assert [i.instance_id for i in client.resolve("user")] == ["user-a"]

        store.register(make_instance(instance_id="user-b", port=8002))
        store.heartbeat("user-b")
        assert [i.instance_id for i in client.resolve("user")] == ["user-a"]

        client.refresh_all()
        assert {i.instance_id for i in client.resolve("user")} == {"user-a", "user-b"}

    def test_cold_miss_with_registry_down_is_empty(self, store):
        registry = FlakyRegistry(store)
        registry.down = True
        assert RegistryClient(registry).resolve("user") == []

    def test_last_known_good_and_stale_warning(self, store):
        store.register(make_instance())
        store.heartbeat("user-a")
        registry = FlakyRegistry(store)
        clock = FakeClock()
        client = RegistryClient(registry, stale_threshold=30, clock=clock)

        assert len(client.resolve("user")) == 1
        registry.down = True
        clock.advance(20)
        assert client.refresh("user") is False
        assert len(client.resolve("user")) == 1

        clock.advance(15)
        with pytest.warns(StaleRegistryWarning):
            assert len(client.resolve("user")) == 1
        assert client.cache_age("user") == 35

        registry.down = False
        assert client.refresh("user") is True
        assert client.cache_age("user") == 0

    def test_empty_cold_miss_is_not_cached(self, store):
        client = RegistryClient(store)

        for n in range(500):
            assert client.resolve(f"bogus-{n}") == []

        assert all(client.cache_age(f"bogus-{n}") is None for n in range(500))
        assert client.refresh_all() is True

    def test_idle_names_are_dropped(self, store):
        for name in ("user", "product"):
            store.register(make_instance(service_name=name, instance_id=f"{name}-a"))
            store.heartbeat(f"{name}-a")
        clock = FakeClock()
        client = RegistryClient(store, idle_expiry=60, clock=clock)
        client.resolve("user")
        client.resolve("product")

        clock.advance(45)
        client.resolve("user")
        clock.advance(30)
        client.refresh_all()

        assert client.cache_age("user") == 0
        assert client.cache_age("product") is None

    def test_refresh_all_reports_failure(self, store):
        store.register(make_instance())
        store.heartbeat("user-a")
        registry = FlakyRegistry(store)
        client = RegistryClient(registry)
        client.resolve("user")

        registry.down = True
        assert client.refresh_all() is False
        assert len(client.resolve("user")) == 1

    def test_resolve_returns_a_copy(self, store):
        store.register(make_instance())
        store.heartbeat("user-a")
        client = RegistryClient(store)
        client.resolve("user").clear()
        assert len(client.resolve("user")) == 1


class TestLifecycle:

    def test_start_heartbeats_and_stop_deregisters(self):
        store = RegistryStore()
        client = RegistryClient(store, make_instance(), heartbeat_interval=0.02,
                                refresh_interval=0.02)
        client.start()
        try:
            deadline = time.monotonic() + 2
            while not store.list_instances("user") and time.monotonic() < deadline:
                time.sleep(0.01)
            assert [i.instance_id for i in store.list_instances("user")] == ["user-a"]
        finally:
            client.stop()

        assert store.get_instance("user-a") is None

    def test_notify_changed_triggers_refresh(self):
        store = RegistryStore()
        store.register(make_instance(instance_id="user-a"))
        store.heartbeat("user-a")
        client = RegistryClient(store, refresh_interval=60)
        assert len(client.resolve("user")) == 1
        client.start()
        try:
            store.register(make_instance(instance_id="user-b", port=8002))
            store.heartbeat("user-b")
            client.notify_changed()
            deadline = time.monotonic() + 2
            while len(client.resolve("user")) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert len(client.resolve("user")) == 2
        finally:
            client.stop()

    def test_retry_delay_backs_off_up_to_interval(self):
        client = RegistryClient(RegistryStore(), register_backoff=0.5)
        assert [client.retry_delay(n, 5) for n in range(6)] == [5, 0.5, 1.0, 2.0, 4.0, 5]

    def test_failed_heartbeats_are_retried_sooner(self):
        store = RegistryStore()
        registry = FlakyRegistry(store)
        client = RegistryClient(registry, make_instance(), heartbeat_interval=1.0,
                                register_backoff=0.02)
        client.start()
        try:
            registry.down = True
            time.sleep(1.5)
        finally:
            client.stop()

        # beats at ~1.0s, then retries 0.02, 0.04, 0.08, 0.16s later
        assert registry.calls["heartbeat"] >= 4

    def test_heartbeat_loop_survives_rejections(self):
        store = RegistryStore()
        registry = RejectingRegistry(store, "heartbeat", 2)
        client = RegistryClient(registry, make_instance(), heartbeat_interval=0.02,
                                register_backoff=0.01)
        client.start()
        try:
            deadline = time.monotonic() + 2
            while not store.list_instances("user") and time.monotonic() < deadline:
                time.sleep(0.01)
            assert [i.instance_id for i in store.list_instances("user")] == ["user-a"]
            assert registry.calls["heartbeat"] >= 3
        finally:
            client.stop()
