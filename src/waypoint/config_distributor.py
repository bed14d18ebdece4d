"""Versioned configuration bundles with refresh notification."""

import json
import queue
import sys
import threading
import time
import urllib.parse
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, Iterator, List, Optional, Union

from .errors import ConfigNotFoundError
from .transport import JSONHTTPClient


@dataclass(frozen=True)
class ConfigBundle:
    """Immutable snapshot of one service's configuration."""
    service_name: str
    version: int
    entries: Dict[str, str] = field(default_factory=dict)
    published_at: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "service_name": self.service_name,
            "version": self.version,
            "entries": dict(self.entries),
            "published_at": self.published_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ConfigBundle':
        return cls(
            service_name=data["service_name"],
            version=int(data["version"]),
            entries={str(k): str(v) for k, v in data.get("entries", {}).items()},
            published_at=float(data.get("published_at") or 0.0),
        )


class NotModified:
    """Returned by ``fetch`` when the caller already holds the latest version."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_MODIFIED"


NOT_MODIFIED = NotModified()

FetchResult = Union[ConfigBundle, NotModified]


class ConfigLog:
    """Append-only JSON-lines log of published bundles."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, bundle: ConfigBundle) -> None:
        line = json.dumps(bundle.to_dict(), sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")
                f.flush()

    def load(self) -> Iterator[ConfigBundle]:
        if not self.path.exists():
            return
        with open(self.path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield ConfigBundle.from_dict(json.loads(line))
                except (ValueError, KeyError) as exc:
                    print(f"[config] {self.path}:{lineno}: unreadable entry ({exc})",
                          file=sys.stderr)
                    raise


class RefreshSubscription:
    """Stream of version numbers, one per publish of the watched service."""

    def __init__(self, distributor: 'ConfigDistributor', service_name: str):
        self.service_name = service_name
        self._distributor = distributor
        self._queue: "queue.Queue[Optional[int]]" = queue.Queue()
        self._closed = False

    def _notify(self, version: int) -> None:
        self._queue.put(version)

    def get(self, timeout: Optional[float] = None) -> Optional[int]:
        """Next version number, or None on timeout or after close()."""
        if self._closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._distributor._unsubscribe(self)
        self._queue.put(None)

    def __iter__(self) -> Iterator[int]:
        while True:
            version = self.get()
            if version is None:
                return
            yield version

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class _ServiceHistory:
    def __init__(self, history_limit: int):
        self.lock = threading.Lock()
        self.bundles: Deque[ConfigBundle] = deque(maxlen=history_limit)
        self.latest_version = 0


class ConfigDistributor:
    """Publishes and serves versioned configuration bundles.

    Publishes for one service name are serialized by that service's writer
    lock, so its versions increase by exactly one per publish. Only the last
    ``history_limit`` bundles are retained.
    """

    def __init__(self, history_limit: int = 5, log: Optional[ConfigLog] = None,
                 clock=time.time):
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._history_limit = history_limit
        self._log = log
        self._clock = clock
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._services: Dict[str, _ServiceHistory] = {}
        self._subscribers: Dict[str, List[RefreshSubscription]] = {}
        if log is not None:
            self._replay(log)

    def _replay(self, log: ConfigLog) -> None:
        count = 0
        for bundle in log.load():
            history = self._history(bundle.service_name)
            if bundle.version <= history.latest_version:
                continue
            history.bundles.append(bundle)
            history.latest_version = bundle.version
            count += 1
        if count:
            print(f"[config] restored {count} bundle(s) from {log.path}", file=sys.stderr)

    def _history(self, service_name: str) -> _ServiceHistory:
        with self._lock:
            history = self._services.get(service_name)
            if history is None:
                history = _ServiceHistory(self._history_limit)
                self._services[service_name] = history
            return history

    def _existing(self, service_name: str) -> _ServiceHistory:
        history = self._services.get(service_name)
        if history is None or not history.bundles:
            raise ConfigNotFoundError(f"no configuration published for {service_name}")
        return history

    def publish(self, service_name: str, entries: Dict[str, str]) -> int:
        history = self._history(service_name)
        with history.lock:
            bundle = ConfigBundle(
                service_name=service_name,
                version=history.latest_version + 1,
                entries={str(k): str(v) for k, v in entries.items()},
                published_at=self._clock(),
            )
            if self._log is not None:
                self._log.append(bundle)
            history.bundles.append(bundle)
            history.latest_version = bundle.version
            # Notify while still holding the writer lock so subscribers see
            # versions in publish order.
            with self._lock:
                subscribers = list(self._subscribers.get(service_name, ()))
                self._changed.notify_all()
            for sub in subscribers:
                sub._notify(bundle.version)
        return bundle.version

    def fetch(self, service_name: str, known_version: Optional[int] = None) -> FetchResult:
        history = self._existing(service_name)
        latest = history.bundles[-1]
        if known_version is not None and known_version == latest.version:
            return NOT_MODIFIED
        return latest

    def latest_version(self, service_name: str) -> int:
        history = self._services.get(service_name)
        return history.latest_version if history is not None else 0

    def get_version(self, service_name: str, version: int) -> ConfigBundle:
        for bundle in self._existing(service_name).bundles:
            if bundle.version == version:
                return bundle
        raise ConfigNotFoundError(
            f"version {version} of {service_name} is not in the retained history"
        )

    def history(self, service_name: str) -> List[ConfigBundle]:
        return list(self._existing(service_name).bundles)

    def rollback(self, service_name: str, version: int) -> int:
        """Republish the entries of a retained version as a new version."""
        bundle = self.get_version(service_name, version)
        return self.publish(service_name, bundle.entries)

    def services(self) -> List[str]:
        return sorted(name for name, h in self._services.items() if h.bundles)

    def subscribe_refresh(self, service_name: str) -> RefreshSubscription:
        sub = RefreshSubscription(self, service_name)
        with self._lock:
            self._subscribers.setdefault(service_name, []).append(sub)
        return sub

    def _unsubscribe(self, sub: RefreshSubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.service_name, [])
            if sub in subs:
                subs.remove(sub)

    def wait_for_version(self, service_name: str, after: int,
                         timeout: Optional[float] = None) -> Optional[int]:
        """Block until the latest version exceeds ``after``; None on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                latest = self.latest_version(service_name)
                if latest > after:
                    return latest
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._changed.wait(remaining)


# ---------------------------------------------------------------------------
# HTTP client for the configuration endpoints
# ---------------------------------------------------------------------------

class ConfigHTTPClient(JSONHTTPClient):
    """Talks to the ``/config`` endpoints of a registry server."""

    def _path(self, service_name: str, suffix: str = "") -> str:
        return f"/config/{urllib.parse.quote(service_name, safe='')}{suffix}"

    def publish(self, service_name: str, entries: Dict[str, str]) -> int:
        _, data = self._request("POST", self._path(service_name), {"entries": entries})
        return int(data["version"])

    def fetch(self, service_name: str, known_version: Optional[int] = None) -> FetchResult:
        path = self._path(service_name)
        if known_version is not None:
            path += "?" + urllib.parse.urlencode({"version": known_version})
        status, data = self._request("GET", path)
        if status == 304:
            return NOT_MODIFIED
        return ConfigBundle.from_dict(data)

    def history(self, service_name: str) -> List[ConfigBundle]:
        _, data = self._request("GET", self._path(service_name, "/history"))
        return [ConfigBundle.from_dict(d) for d in data]

    def rollback(self, service_name: str, version: int) -> int:
        _, data = self._request("POST", self._path(service_name, "/rollback"),
                                {"version": version})
        return int(data["version"])

    def watch(self, service_name: str, after: int, timeout: float = 25.0) -> Optional[int]:
        """Long-poll for a version newer than ``after``; None if none arrived."""
        qs = urllib.parse.urlencode({"after": after, "timeout": timeout})
        status, data = self._request("GET", self._path(service_name, f"/watch?{qs}"),
                                     timeout=timeout + 5)
        if status == 204:
            return None
        return int(data["version"])
