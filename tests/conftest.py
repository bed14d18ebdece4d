"""Shared fixtures for Waypoint tests."""

import pytest

from waypoint.config_distributor import ConfigDistributor
from waypoint.registry import RegistryStore, ServiceInstance, start_registry_server


class FakeClock:
    """Manually advanced clock usable wherever a ``time.time`` is expected."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_instance(service_name="user", instance_id="user-a", host="10.0.0.1", port=8001, **kw):
    return ServiceInstance(
        service_name=service_name, instance_id=instance_id, host=host, port=port, **kw
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return RegistryStore(clock=clock)


@pytest.fixture
def registry_server():
    """A real registry + config server on an ephemeral port."""
    store = RegistryStore()
    distributor = ConfigDistributor()
    server = start_registry_server(store, distributor, host="127.0.0.1", port=0)
    try:
        yield store, distributor, server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()
