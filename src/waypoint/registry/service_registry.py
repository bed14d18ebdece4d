#!/usr/bin/env python3
"""
Service Registry and Health Tracking

This module provides:
- ServiceInstance / InstanceStatus: the registry's record of one process
- RegistryStore: a copy-on-write, thread-safe in-memory registry
- RegistryHTTPClient: HTTP client exposing the same operations as the store
"""

import threading
import time
import urllib.parse
from dataclasses import dataclass, asdict, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from ..errors import DuplicateInstanceError, UnknownInstanceError
from ..transport import JSONHTTPClient


class InstanceStatus(Enum):
    """Instance health status"""
    STARTING = "STARTING"
    UP = "UP"
    DOWN = "DOWN"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


def new_instance_id(service_name: str) -> str:
    return f"{service_name}-{uuid4().hex[:8]}"


@dataclass(frozen=True)
class ServiceInstance:
    """One registered process of a logical service.

    Instances are immutable; the store swaps in a new object on every
    state change so readers holding an older snapshot are unaffected.
    """
    service_name: str
    instance_id: str
    host: str
    port: int
    status: InstanceStatus = InstanceStatus.STARTING
    last_heartbeat_at: float = 0.0
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_up(self) -> bool:
        return self.status is InstanceStatus.UP

    def to_dict(self) -> Dict:
        """Convert to JSON-serialisable dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ServiceInstance':
        """Create from dictionary."""
        data = dict(data)
        if not data.get("service_name"):
            raise ValueError("service_name is required")
        if not data.get("host"):
            raise ValueError("host is required")
        if not data.get("instance_id"):
            data["instance_id"] = new_instance_id(data["service_name"])
        data["port"] = int(data["port"])
        data["status"] = InstanceStatus(data.get("status", InstanceStatus.STARTING.value))
        data["last_heartbeat_at"] = float(data.get("last_heartbeat_at") or 0.0)
        data["metadata"] = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
        known = {"service_name", "instance_id", "host", "port", "status",
                 "last_heartbeat_at", "metadata"}
        return cls(**{k: v for k, v in data.items() if k in known})


# ---------------------------------------------------------------------------
# In-memory registry store
# ---------------------------------------------------------------------------

class RegistryStore:
    """Thread-safe, dict-backed service registry.

    Writers are serialized by one lock and commit a fresh snapshot dict.
    Readers take whatever snapshot is current without locking, so reads never
    wait on each other and a mutation is only seen by the next read.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._instances: Dict[str, ServiceInstance] = {}
        self._revision = 0
        self._clock = clock

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @property
    def revision(self) -> int:
        return self._revision

    def _commit(self, instances: Dict[str, ServiceInstance]) -> None:
        self._instances = instances
        self._revision += 1

    def register(self, instance: ServiceInstance) -> str:
        now = self._clock()
        with self._lock:
            existing = self._instances.get(instance.instance_id)
            if existing is not None and existing.is_up:
                if (existing.host, existing.port) != (instance.host, instance.port):
                    raise DuplicateInstanceError(
                        f"instance {instance.instance_id} is already UP at {existing.address}"
                    )
                entry = replace(existing, last_heartbeat_at=now)
            else:
                entry = replace(
                    instance,
                    status=InstanceStatus.STARTING,
                    last_heartbeat_at=now,
                    metadata=dict(instance.metadata),
                )
            instances = dict(self._instances)
            instances[entry.instance_id] = entry
            self._commit(instances)
        return entry.instance_id

    def heartbeat(self, instance_id: str) -> ServiceInstance:
        now = self._clock()
        with self._lock:
            info = self._instances.get(instance_id)
            if info is None:
                raise UnknownInstanceError(f"unknown instance {instance_id}")
            status = info.status
            if status in (InstanceStatus.STARTING, InstanceStatus.DOWN):
                status = InstanceStatus.UP
            entry = replace(info, status=status, last_heartbeat_at=now)
            instances = dict(self._instances)
            instances[instance_id] = entry
            self._commit(instances)
        return entry

    def set_status(self, instance_id: str, status: InstanceStatus) -> ServiceInstance:
        with self._lock:
            info = self._instances.get(instance_id)
            if info is None:
                raise UnknownInstanceError(f"unknown instance {instance_id}")
            entry = replace(info, status=status)
            instances = dict(self._instances)
            instances[instance_id] = entry
            self._commit(instances)
        return entry

    def deregister(self, instance_id: str) -> bool:
        with self._lock:
            if instance_id not in self._instances:
                return False
            instances = dict(self._instances)
            del instances[instance_id]
            self._commit(instances)
        return True

    def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        return self._instances.get(instance_id)

    def list_instances(self, service_name: str) -> List[ServiceInstance]:
        return [
            s for s in self._instances.values()
            if s.service_name == service_name and s.is_up
        ]

    def all_instances(self, service_name: Optional[str] = None) -> List[ServiceInstance]:
        return [
            s for s in self._instances.values()
            if service_name is None or s.service_name == service_name
        ]

    def service_names(self) -> List[str]:
        return sorted({s.service_name for s in self._instances.values()})

    def count(self, service_name: Optional[str] = None) -> int:
        return len(self.all_instances(service_name))

    def sweep(self, eviction_threshold: float,
              eviction_grace: float) -> Tuple[List[ServiceInstance], List[ServiceInstance]]:
        """Mark silent instances DOWN and evict those silent past the grace period.

        Runs entirely under the write lock so a heartbeat is either applied
        before the staleness check or after the eviction, never in between.
        Returns ``(downed, evicted)``.
        """
        downed: List[ServiceInstance] = []
        evicted: List[ServiceInstance] = []
        with self._lock:
            now = self._clock()
            instances = dict(self._instances)
            for instance_id, info in self._instances.items():
                silence = now - info.last_heartbeat_at
                if silence > eviction_threshold + eviction_grace:
                    del instances[instance_id]
                    evicted.append(info)
                elif silence > eviction_threshold and info.status is not InstanceStatus.DOWN:
                    entry = replace(info, status=InstanceStatus.DOWN)
                    instances[instance_id] = entry
                    downed.append(entry)
            if downed or evicted:
                self._commit(instances)
        return downed, evicted


# ---------------------------------------------------------------------------
# HTTP client (same surface as RegistryStore, over the network)
# ---------------------------------------------------------------------------

class RegistryHTTPClient(JSONHTTPClient):
    """HTTP client for the registry API.

    Raises the same errors as :class:`RegistryStore`, plus
    ``RegistryUnavailableError`` when the registry cannot be reached.
    """

    def register(self, instance: ServiceInstance) -> str:
        _, data = self._request("POST", "/instances", instance.to_dict())
        return data["instance_id"]

    def heartbeat(self, instance_id: str) -> ServiceInstance:
        path = f"/instances/{urllib.parse.quote(instance_id, safe='')}/heartbeat"
        _, data = self._request("PUT", path)
        return ServiceInstance.from_dict(data)

    def set_status(self, instance_id: str, status: InstanceStatus) -> ServiceInstance:
        path = f"/instances/{urllib.parse.quote(instance_id, safe='')}/status"
        _, data = self._request("PUT", path, {"status": status.value})
        return ServiceInstance.from_dict(data)

    def deregister(self, instance_id: str) -> bool:
        path = f"/instances/{urllib.parse.quote(instance_id, safe='')}"
        _, data = self._request("DELETE", path)
        return bool(data.get("removed"))

    def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        path = f"/instances/{urllib.parse.quote(instance_id, safe='')}"
        try:
            _, data = self._request("GET", path)
        except UnknownInstanceError:
            return None
        return ServiceInstance.from_dict(data)

    def list_instances(self, service_name: str) -> List[ServiceInstance]:
        qs = urllib.parse.urlencode({"service": service_name})
        _, data = self._request("GET", f"/instances?{qs}")
        return [ServiceInstance.from_dict(d) for d in data]

    def all_instances(self, service_name: Optional[str] = None) -> List[ServiceInstance]:
        params = {"all": "1"}
        if service_name:
            params["service"] = service_name
        qs = urllib.parse.urlencode(params)
        _, data = self._request("GET", f"/instances?{qs}")
        return [ServiceInstance.from_dict(d) for d in data]

    def services(self) -> Dict[str, int]:
        _, data = self._request("GET", "/services")
        return data
