"""Routing gateway: resolve a logical service name, balance, forward, retry."""

import http.client
import sys
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from enum import Enum
from http.server import ThreadingHTTPServer
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import (
    DeadlineExceededError,
    NoInstanceAvailableError,
    UpstreamUnavailableError,
    WaypointError,
)
from .registry import ServiceInstance
from .transport import BadRequest, JSONRequestHandler

# Methods that may be replayed against another instance after any failure
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE", "PUT", "DELETE"})

HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailers", "transfer-encoding", "upgrade", "host", "content-length",
})

TIMEOUT_HEADER = "X-Request-Timeout"


class RequestState(Enum):
    RECEIVED = "RECEIVED"
    RESOLVED = "RESOLVED"
    FORWARDING = "FORWARDING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RouteDecision:
    chosen_instance: ServiceInstance
    attempt_number: int


@dataclass
class ProxyRequest:
    method: str
    service_name: str
    path: str = "/"
    query: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def target(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def idempotent(self) -> bool:
        return self.method.upper() in IDEMPOTENT_METHODS


@dataclass
class ProxyResponse:
    status: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    instance: Optional[ServiceInstance] = None


@dataclass
class RequestContext:
    """Per-request bookkeeping: deadline, state trail and routing decisions."""
    request: ProxyRequest
    deadline: float
    state: RequestState = RequestState.RECEIVED
    states: List[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])
    decisions: List[RouteDecision] = field(default_factory=list)

    def transition(self, state: RequestState) -> None:
        self.state = state
        self.states.append(state)


class ForwardError(Exception):
    """Transport failure talking to an upstream instance.

    ``sent`` is False when the connection could not be established, i.e. the
    upstream cannot have seen the request.
    """

    def __init__(self, message: str, sent: bool):
        super().__init__(message)
        self.sent = sent


class HTTPForwarder:
    """Sends a ProxyRequest to one instance with http.client.

    *timeout* bounds the whole attempt, not each socket operation: the socket
    timeout is reset to the time left before every read, and an upstream that
    is still sending when the time runs out fails the attempt.
    """

    def __init__(self, chunk_size: int = 64 * 1024, clock: Callable[[], float] = time.monotonic):
        self.chunk_size = chunk_size
        self._clock = clock

    def _time_left(self, deadline: float, instance: ServiceInstance) -> float:
        left = deadline - self._clock()
        if left <= 0:
            raise ForwardError(f"{instance.address} did not answer in time", sent=True)
        return left

    def __call__(self, instance: ServiceInstance, request: ProxyRequest,
                 timeout: float) -> ProxyResponse:
        deadline = self._clock() + timeout
        conn = http.client.HTTPConnection(instance.host, instance.port, timeout=timeout)
        try:
            try:
                conn.connect()
            except OSError as exc:
                raise ForwardError(f"connect to {instance.address} failed: {exc}", sent=False) from exc
            sock = conn.sock
            resp = None
            try:
                sock.settimeout(self._time_left(deadline, instance))
                conn.request(request.method, request.target,
                             body=request.body or None, headers=request.headers)
                sock.settimeout(self._time_left(deadline, instance))
                resp = conn.getresponse()
                chunks = []
                while True:
                    sock.settimeout(self._time_left(deadline, instance))
                    chunk = resp.read1(self.chunk_size)
                    if not chunk:
                        break
                    chunks.append(chunk)
            except (OSError, http.client.HTTPException) as exc:
                raise ForwardError(f"{request.method} {instance.address}{request.target}"
                                   f" failed: {exc}", sent=True) from exc
            finally:
                if resp is not None:
                    resp.close()
            return ProxyResponse(resp.status, resp.getheaders(), b"".join(chunks), instance)
        finally:
            conn.close()


class RoundRobinBalancer:
    """Round-robin per service name over the UP instances of a resolved set."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}

    def choose(self, service_name: str, instances: Iterable[ServiceInstance],
               exclude: Iterable[str] = ()) -> Optional[ServiceInstance]:
        eligible = sorted((i for i in instances if i.is_up), key=lambda i: i.instance_id)
        if not eligible:
            return None
        with self._lock:
            start = self._counters.get(service_name, 0)
            self._counters[service_name] = start + 1
        excluded = set(exclude)
        for offset in range(len(eligible)):
            candidate = eligible[(start + offset) % len(eligible)]
            if candidate.instance_id not in excluded:
                return candidate
        return None


class Gateway:
    """Routes requests for logical service names to live instances.

    *resolver* needs a ``resolve(service_name)`` method returning instances,
    normally a :class:`waypoint.client.RegistryClient`.
    """

    def __init__(
        self,
        resolver,
        balancer: Optional[RoundRobinBalancer] = None,
        forwarder: Optional[Callable[[ServiceInstance, ProxyRequest, float], ProxyResponse]] = None,
        max_attempts: int = 3,
        request_timeout: float = 10,
        default_deadline: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.resolver = resolver
        self.balancer = balancer or RoundRobinBalancer()
        self.forwarder = forwarder or HTTPForwarder()
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout
        self.default_deadline = default_deadline
        self._clock = clock

    def route(self, request: ProxyRequest, timeout: Optional[float] = None) -> ProxyResponse:
        """Route one request; *timeout* overrides the default deadline (seconds)."""
        deadline = self._clock() + (timeout if timeout is not None else self.default_deadline)
        return self.handle(RequestContext(request=request, deadline=deadline))

    def _fail(self, ctx: RequestContext, exc: WaypointError) -> WaypointError:
        ctx.transition(RequestState.FAILED)
        return exc

    def _may_retry(self, request: ProxyRequest, error: ForwardError, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if request.idempotent:
            return True
        return attempt == 1 and not error.sent

    def handle(self, ctx: RequestContext) -> ProxyResponse:
        request = ctx.request
        name = request.service_name
        instances = [i for i in self.resolver.resolve(name) if i.is_up]
        if not instances:
            raise self._fail(ctx, NoInstanceAvailableError(f"no live instance of {name}"))
        ctx.transition(RequestState.RESOLVED)

        tried = set()
        last_error: Optional[ForwardError] = None
        attempt = 0
        while True:
            remaining = ctx.deadline - self._clock()
            if remaining <= 0:
                raise self._fail(ctx, DeadlineExceededError(
                    f"deadline exceeded after {attempt} attempt(s) to {name}"
                )) from last_error
            instance = self.balancer.choose(name, instances, exclude=tried)
            if instance is None:
                break
            attempt += 1
            tried.add(instance.instance_id)
            ctx.decisions.append(RouteDecision(chosen_instance=instance, attempt_number=attempt))
            ctx.transition(RequestState.FORWARDING)
            try:
                response = self.forwarder(instance, request, min(self.request_timeout, remaining))
            except ForwardError as exc:
                last_error = exc
                print(f"[gateway] {name} attempt {attempt} via {instance.instance_id}: {exc}",
                      file=sys.stderr)
                if not self._may_retry(request, exc, attempt):
                    break
                ctx.transition(RequestState.RETRYING)
                continue
            if self._clock() >= ctx.deadline:
                raise self._fail(ctx, DeadlineExceededError(
                    f"{instance.instance_id} answered after the deadline for {name}"
                ))
            ctx.transition(RequestState.SUCCEEDED)
            return response

        if self._clock() >= ctx.deadline:
            raise self._fail(ctx, DeadlineExceededError(
                f"deadline exceeded after {attempt} attempt(s) to {name}"
            )) from last_error
        raise self._fail(ctx, UpstreamUnavailableError(
            f"{request.method} {name}{request.target} failed after {attempt} attempt(s)"
        )) from last_error


# ---------------------------------------------------------------------------
# HTTP front end
# ---------------------------------------------------------------------------

def parse_service_path(raw_path: str) -> Optional[Tuple[str, str, str]]:
    """Split ``/svc/{name}/rest?query`` into ``(name, "/rest", query)``."""
    parsed = urllib.parse.urlsplit(raw_path)
    segments = parsed.path.split("/", 3)
    if len(segments) < 3 or segments[0] != "" or segments[1] != "svc" or not segments[2]:
        return None
    rest = "/" + segments[3] if len(segments) > 3 else "/"
    return urllib.parse.unquote(segments[2]), rest, parsed.query


def _make_handler(gateway: Gateway):

    class GatewayHTTPHandler(JSONRequestHandler):

        def _proxy(self):
            if self.path == "/health":
                self._json_response({"status": "UP"})
                return
            target = parse_service_path(self.path)
            if target is None:
                self._json_response({"error": "expected /svc/{service}/...", "kind": "NotFound"},
                                    status=404)
                return
            service_name, path, query = target

            timeout = None
            raw_timeout = self.headers.get(TIMEOUT_HEADER)
            if raw_timeout:
                try:
                    timeout = float(raw_timeout)
                except ValueError:
                    self._json_response(
                        {"error": f"invalid {TIMEOUT_HEADER}: {raw_timeout}", "kind": "BadRequest"},
                        status=400,
                    )
                    return

            try:
                body = self._read_body()
            except BadRequest as exc:
                self._json_response({"error": str(exc), "kind": "BadRequest"}, status=400)
                return
            headers = {
                k: v for k, v in self.headers.items()
                if k.lower() not in HOP_BY_HOP_HEADERS
            }
            forwarded = headers.pop("X-Forwarded-For", None)
            client = self.client_address[0]
            headers["X-Forwarded-For"] = f"{forwarded}, {client}" if forwarded else client

            request = ProxyRequest(
                method=self.command,
                service_name=service_name,
                path=path,
                query=query,
                headers=headers,
                body=body,
            )
            try:
                response = gateway.route(request, timeout=timeout)
            except WaypointError as exc:
                self._error_response(exc)
                return

            self.send_response(response.status)
            for key, value in response.headers:
                # send_response already wrote Server and Date
                if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in ("server", "date"):
                    self.send_header(key, value)
            self.send_header("Content-Length", str(len(response.body)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(response.body)

        do_GET = _proxy
        do_HEAD = _proxy
        do_POST = _proxy
        do_PUT = _proxy
        do_PATCH = _proxy
        do_DELETE = _proxy
        do_OPTIONS = _proxy

    return GatewayHTTPHandler


def start_gateway_server(
    gateway: Gateway,
    host: str = "0.0.0.0",
    port: int = 8080,
) -> ThreadingHTTPServer:
    """Start the gateway's ThreadingHTTPServer in a daemon thread."""
    server = ThreadingHTTPServer((host, port), _make_handler(gateway))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
