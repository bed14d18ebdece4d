"""
Service Registry

This package provides:
1. RegistryStore: copy-on-write in-memory registry of service instances
2. RegistryHTTPClient: HTTP client with the same operations as the store
3. start_registry_server: launches the registry/config HTTP API in a daemon thread
"""

from .service_registry import (
    InstanceStatus,
    RegistryHTTPClient,
    RegistryStore,
    ServiceInstance,
    new_instance_id,
)
from .server import start_registry_server

__all__ = [
    'InstanceStatus',
    'RegistryHTTPClient',
    'RegistryStore',
    'ServiceInstance',
    'new_instance_id',
    'start_registry_server',
]
