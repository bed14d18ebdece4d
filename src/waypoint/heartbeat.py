"""Health monitor: marks silent instances DOWN and evicts them."""

import sys
import threading
from typing import List, Optional, Tuple

from .registry import RegistryStore, ServiceInstance


class HealthMonitor:
    """Periodically sweeps a :class:`RegistryStore` for stale instances.

    An instance silent for more than *eviction_threshold* seconds is marked
    DOWN (and so disappears from ``list_instances``). If it stays silent for
    another *eviction_grace* seconds it is evicted from the store.
    """

    def __init__(
        self,
        store: RegistryStore,
        interval: float = 10,
        eviction_threshold: float = 30,
        eviction_grace: float = 30,
    ):
        self.store = store
        self.interval = interval
        self.eviction_threshold = eviction_threshold
        self.eviction_grace = eviction_grace
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Tuple[List[ServiceInstance], List[ServiceInstance]]:
        """Run a single sweep and return ``(downed, evicted)``."""
        downed, evicted = self.store.sweep(self.eviction_threshold, self.eviction_grace)
        for info in downed:
            print(
                f"[monitor] {info.service_name}/{info.instance_id}: no heartbeat for"
                f" >{self.eviction_threshold:g}s -> DOWN",
                file=sys.stderr,
            )
        for info in evicted:
            print(
                f"[monitor] {info.service_name}/{info.instance_id}: evicted",
                file=sys.stderr,
            )
        return downed, evicted

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
