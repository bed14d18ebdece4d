"""Registry client embedded in every service process."""

import sys
import threading
import time
import warnings
from typing import Callable, Dict, List, Optional, Tuple

from .errors import (
    RegistrationError,
    RegistryUnavailableError,
    StaleRegistryWarning,
    UnknownInstanceError,
    WaypointError,
)
from .registry import ServiceInstance


class RegistryClient:
    """Registers one process, keeps it alive and caches instance lists.

    *registry* is anything with the registry operations: a ``RegistryStore``
    in the same process or a ``RegistryHTTPClient`` pointing at a remote
    registry. *instance* is optional; a gateway only resolves.
    """

    def __init__(
        self,
        registry,
        instance: Optional[ServiceInstance] = None,
        heartbeat_interval: float = 5,
        refresh_interval: float = 5,
        stale_threshold: float = 30,
        idle_expiry: float = 300,
        register_attempts: int = 5,
        register_backoff: float = 0.5,
        register_max_backoff: float = 8,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.instance = instance
        self.heartbeat_interval = heartbeat_interval
        self.refresh_interval = refresh_interval
        self.stale_threshold = stale_threshold
        self.idle_expiry = idle_expiry
        self.register_attempts = register_attempts
        self.register_backoff = register_backoff
        self.register_max_backoff = register_max_backoff
        self._clock = clock
        self._sleep = sleep

        self._cache: Dict[str, Tuple[float, List[ServiceInstance]]] = {}
        self._cache_lock = threading.Lock()
        self._last_resolved: Dict[str, float] = {}
        self._stale_reported: set = set()
        self._stop = threading.Event()
        self._refresh_now = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def instance_id(self) -> Optional[str]:
        return self.instance.instance_id if self.instance is not None else None

    # -- registration ----------------------------------------------------------

    def register(self) -> str:
        """Register with exponential backoff; raise RegistrationError if it never succeeds."""
        if self.instance is None:
            raise RegistrationError("no instance to register")
        delay = self.register_backoff
        last_error: Optional[Exception] = None
        for attempt in range(1, self.register_attempts + 1):
            try:
                instance_id = self.registry.register(self.instance)
            except RegistryUnavailableError as exc:
                last_error = exc
                print(
                    f"[client] register {self.instance.instance_id} attempt"
                    f" {attempt}/{self.register_attempts} failed: {exc}",
                    file=sys.stderr,
                )
                if attempt < self.register_attempts:
                    self._sleep(delay)
                    delay = min(delay * 2, self.register_max_backoff)
                continue
            except (WaypointError, ValueError) as exc:
                raise RegistrationError(
                    f"registry rejected {self.instance.instance_id}: {exc}"
                ) from exc
            print(f"[client] registered {self.instance.service_name}/{instance_id}",
                  file=sys.stderr)
            return instance_id
        raise RegistrationError(
            f"could not register {self.instance.instance_id} after"
            f" {self.register_attempts} attempts"
        ) from last_error

    def heartbeat_once(self) -> None:
        """Send one heartbeat; re-register if the registry has forgotten us."""
        try:
            self.registry.heartbeat(self.instance.instance_id)
        except UnknownInstanceError:
            print(f"[client] {self.instance.instance_id} unknown to registry, re-registering",
                  file=sys.stderr)
            self.registry.register(self.instance)
            self.registry.heartbeat(self.instance.instance_id)

    def retry_delay(self, failures: int, interval: float) -> float:
        """Wait before the next loop pass after *failures* consecutive failures.

        Starts at ``register_backoff`` and doubles, never exceeding the loop's
        regular *interval*.
        """
        if failures <= 0:
            return interval
        return min(self.register_backoff * 2 ** (failures - 1), interval)

    def _heartbeat_loop(self) -> None:
        failures = 0
        while not self._stop.wait(self.retry_delay(failures, self.heartbeat_interval)):
            try:
                self.heartbeat_once()
            except RegistryUnavailableError as exc:
                if not failures:
                    print(f"[client] heartbeat failed: {exc}", file=sys.stderr)
                failures += 1
                continue
            except (WaypointError, ValueError) as exc:
                print(f"[client] heartbeat rejected: {exc}", file=sys.stderr)
                failures += 1
                continue
            if failures:
                print("[client] heartbeat recovered", file=sys.stderr)
            failures = 0

    # -- resolution --------------------------------------------------------------

    def refresh(self, service_name: str) -> bool:
        """Pull a fresh instance list for one service. Returns False on failure."""
        try:
            instances = self.registry.list_instances(service_name)
        except RegistryUnavailableError as exc:
            print(f"[client] refresh of {service_name} failed: {exc}", file=sys.stderr)
            return False
        with self._cache_lock:
            self._cache[service_name] = (self._clock(), list(instances))
            self._stale_reported.discard(service_name)
        return True

    def refresh_all(self) -> bool:
        """Refresh every cached name, dropping names nobody resolved recently.

        Returns False if any refresh failed.
        """
        now = self._clock()
        with self._cache_lock:
            for name, used_at in list(self._last_resolved.items()):
                if now - used_at > self.idle_expiry:
                    self._cache.pop(name, None)
                    self._last_resolved.pop(name, None)
                    self._stale_reported.discard(name)
            names = list(self._cache)
        ok = True
        for name in names:
            ok = self.refresh(name) and ok
        return ok

    def notify_changed(self) -> None:
        """Ask the refresh loop to pull immediately (push notification hook)."""
        self._refresh_now.set()

    def _refresh_loop(self) -> None:
        failures = 0
        while not self._stop.is_set():
            self._refresh_now.wait(self.retry_delay(failures, self.refresh_interval))
            self._refresh_now.clear()
            if self._stop.is_set():
                return
            failures = 0 if self.refresh_all() else failures + 1

    def cache_age(self, service_name: str) -> Optional[float]:
        entry = self._cache.get(service_name)
        if entry is None:
            return None
        return self._clock() - entry[0]

    def resolve(self, service_name: str) -> List[ServiceInstance]:
        """Return the cached instance list for *service_name*.

        Only a name that is not cached triggers a fetch; after that the
        background loop keeps the cache fresh and the last known good list
        is served while the registry is unreachable. A first lookup that
        finds no instances is not cached.
        """
        entry = self._cache.get(service_name)
        if entry is None:
            if not self.refresh(service_name):
                return []
            with self._cache_lock:
                entry = self._cache.get(service_name)
                if entry is None or not entry[1]:
                    self._cache.pop(service_name, None)
                    return []
        self._last_resolved[service_name] = self._clock()
        fetched_at, instances = entry
        age = self._clock() - fetched_at
        if age > self.stale_threshold and service_name not in self._stale_reported:
            self._stale_reported.add(service_name)
            message = (f"instance list for {service_name} is {age:.1f}s old"
                       f" (threshold {self.stale_threshold:g}s)")
            print(f"[client] {message}", file=sys.stderr)
            warnings.warn(message, StaleRegistryWarning, stacklevel=2)
        return list(instances)

    # -- lifecycle -----------------------------------------------------------------

    def start(self) -> None:
        """Register (if this client owns an instance) and start the background loops."""
        self._stop.clear()
        loops = [("registry-refresh", self._refresh_loop)]
        if self.instance is not None:
            self.register()
            loops.append(("registry-heartbeat", self._heartbeat_loop))
        for name, target in loops:
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, deregister: bool = True) -> None:
        self._stop.set()
        self._refresh_now.set()
        for thread in self._threads:
            thread.join(timeout=self.heartbeat_interval + 1)
        self._threads = []
        if deregister and self.instance is not None:
            try:
                self.registry.deregister(self.instance.instance_id)
            except RegistryUnavailableError as exc:
                print(f"[client] deregister failed: {exc}", file=sys.stderr)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
