"""
Unit tests for gateway routing, load balancing and retries.
"""

from collections import Counter

import pytest

from waypoint.client import RegistryClient
from waypoint.errors import (
    DeadlineExceededError,
    NoInstanceAvailableError,
    UpstreamUnavailableError,
)
from waypoint.gateway import (
    ForwardError,
    Gateway,
    ProxyRequest,
    ProxyResponse,
    RequestContext,
    RequestState,
    RoundRobinBalancer,
    parse_service_path,
)
from waypoint.heartbeat import HealthMonitor
from waypoint.registry import InstanceStatus

from conftest import FakeClock, make_instance


class StaticResolver:
    def __init__(self, instances):
        self.instances = instances

    def resolve(self, service_name):
        return [i for i in self.instances if i.service_name == service_name]


class ScriptedForwarder:
    """Records calls; fails for instance ids listed in *failures*."""

    def __init__(self, failures=None, on_call=None):
        self.failures = failures or {}
        self.on_call = on_call
        self.calls = []

    def __call__(self, instance, request, timeout):
        self.calls.append((instance.instance_id, timeout))
        if self.on_call:
            self.on_call(instance)
        sent = self.failures.get(instance.instance_id)
        if sent is not None:
            raise ForwardError(f"{instance.instance_id} failed", sent=sent)
        return ProxyResponse(200, [("X-Instance", instance.instance_id)], b"ok", instance)


def _up(instance_id, port, service_name="user"):
    return make_instance(service_name=service_name, instance_id=instance_id, port=port,
                         status=InstanceStatus.UP)


@pytest.fixture
def three_instances():
    return [_up("user-a", 8001), _up("user-b", 8002), _up("user-c", 8003)]


class TestRoundRobin:

    def test_even_distribution(self, three_instances):
        forwarder = ScriptedForwarder()
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder)

        for _ in range(30):
            gateway.route(ProxyRequest("GET", "user", "/users/1"))

        counts = Counter(instance_id for instance_id, _ in forwarder.calls)
        assert counts == {"user-a": 10, "user-b": 10, "user-c": 10}

    def test_order_of_resolved_set_does_not_matter(self, three_instances):
        balancer = RoundRobinBalancer()
        picks = [
            balancer.choose("user", list(reversed(three_instances)) if n % 2 else three_instances)
            for n in range(6)
        ]
        assert [p.instance_id for p in picks] == ["user-a", "user-b", "user-c"] * 2

    def test_skips_down_instances_in_resolved_set(self):
        instances = [_up("user-a", 8001),
                     make_instance(instance_id="user-b", port=8002, status=InstanceStatus.DOWN)]
        forwarder = ScriptedForwarder()
        gateway = Gateway(StaticResolver(instances), forwarder=forwarder)

        for _ in range(4):
            gateway.route(ProxyRequest("GET", "user"))

        assert {instance_id for instance_id, _ in forwarder.calls} == {"user-a"}

    def test_counters_are_per_service(self):
        balancer = RoundRobinBalancer()
        users = [_up("user-a", 8001), _up("user-b", 8002)]
        products = [_up("product-a", 9001, "product"), _up("product-b", 9002, "product")]

        assert balancer.choose("user", users).instance_id == "user-a"
        assert balancer.choose("product", products).instance_id == "product-a"
        assert balancer.choose("user", users).instance_id == "user-b"

    def test_choose_with_everything_excluded(self, three_instances):
        balancer = RoundRobinBalancer()
        assert balancer.choose("user", three_instances,
                               exclude={"user-a", "user-b", "user-c"}) is None
        assert balancer.choose("user", []) is None


class TestResolution:

    def test_no_instances_is_an_error(self):
        gateway = Gateway(StaticResolver([]), forwarder=ScriptedForwarder())
        ctx = RequestContext(ProxyRequest("GET", "user"), deadline=float("inf"))

        with pytest.raises(NoInstanceAvailableError):
            gateway.handle(ctx)
        assert ctx.states == [RequestState.RECEIVED, RequestState.FAILED]

    def test_only_down_instances_is_an_error(self):
        down = make_instance(status=InstanceStatus.DOWN)
        gateway = Gateway(StaticResolver([down]), forwarder=ScriptedForwarder())
        with pytest.raises(NoInstanceAvailableError):
            gateway.route(ProxyRequest("GET", "user"))

    def test_evicted_instance_receives_no_traffic(self, store, clock):
        store.register(make_instance(instance_id="user-a", port=8001))
        store.register(make_instance(instance_id="user-b", port=8002))
        store.heartbeat("user-a")
        store.heartbeat("user-b")
        monitor = HealthMonitor(store, eviction_threshold=30, eviction_grace=30)
        resolver = RegistryClient(store)
        resolver.resolve("user")

        for _ in range(7):
            clock.advance(10)
            store.heartbeat("user-b")
            monitor.run_once()
        resolver.refresh_all()
        assert store.get_instance("user-a") is None

        forwarder = ScriptedForwarder()
        gateway = Gateway(resolver, forwarder=forwarder)
        for _ in range(10):
            gateway.route(ProxyRequest("GET", "user", "/users/7"))

        assert [instance_id for instance_id, _ in forwarder.calls] == ["user-b"] * 10


class TestRetries:

    def test_idempotent_request_moves_to_next_instance(self, three_instances):
        forwarder = ScriptedForwarder(failures={"user-a": True})
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder)
        ctx = RequestContext(ProxyRequest("GET", "user"), deadline=float("inf"))

        response = gateway.handle(ctx)

        assert response.instance.instance_id == "user-b"
        assert [d.attempt_number for d in ctx.decisions] == [1, 2]
        assert ctx.states == [
            RequestState.RECEIVED, RequestState.RESOLVED, RequestState.FORWARDING,
            RequestState.RETRYING, RequestState.FORWARDING, RequestState.SUCCEEDED,
        ]

    def test_attempts_are_bounded(self):
        instances = [_up(f"user-{n}", 8000 + n) for n in range(5)]
        forwarder = ScriptedForwarder(failures={i.instance_id: True for i in instances})
        gateway = Gateway(StaticResolver(instances), forwarder=forwarder, max_attempts=3)

        with pytest.raises(UpstreamUnavailableError) as excinfo:
            gateway.route(ProxyRequest("PUT", "user"))
        assert len(forwarder.calls) == 3
        assert len({instance_id for instance_id, _ in forwarder.calls}) == 3
        assert isinstance(excinfo.value.__cause__, ForwardError)

    def test_attempts_limited_to_distinct_instances(self):
        instances = [_up("user-a", 8001)]
        forwarder = ScriptedForwarder(failures={"user-a": False})
        gateway = Gateway(StaticResolver(instances), forwarder=forwarder)

        with pytest.raises(UpstreamUnavailableError):
            gateway.route(ProxyRequest("GET", "user"))
        assert len(forwarder.calls) == 1

    def test_post_not_retried_after_request_sent(self, three_instances):
        forwarder = ScriptedForwarder(failures={"user-a": True})
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder)
        ctx = RequestContext(ProxyRequest("POST", "user", body=b"{}"), deadline=float("inf"))

        with pytest.raises(UpstreamUnavailableError):
            gateway.handle(ctx)
        assert len(forwarder.calls) == 1
        assert ctx.state is RequestState.FAILED

    def test_post_retried_once_on_connect_failure(self, three_instances):
        forwarder = ScriptedForwarder(failures={"user-a": False})
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder)

        response = gateway.route(ProxyRequest("POST", "user"))
        assert response.instance.instance_id == "user-b"

    def test_post_gives_up_after_second_connect_failure(self, three_instances):
        forwarder = ScriptedForwarder(failures={"user-a": False, "user-b": False})
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder)

        with pytest.raises(UpstreamUnavailableError):
            gateway.route(ProxyRequest("PATCH", "user"))
        assert [instance_id for instance_id, _ in forwarder.calls] == ["user-a", "user-b"]


class TestDeadlines:

    def test_deadline_expiry_abandons_retries(self, three_instances):
        clock = FakeClock()
        forwarder = ScriptedForwarder(failures={"user-a": True, "user-b": True},
                                      on_call=lambda instance: clock.advance(6))
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder, clock=clock)

        with pytest.raises(DeadlineExceededError):
            gateway.route(ProxyRequest("GET", "user"), timeout=5)
        assert len(forwarder.calls) == 1

    def test_attempt_timeout_bounded_by_remaining_time(self, three_instances):
        clock = FakeClock()
        forwarder = ScriptedForwarder()
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder,
                          request_timeout=10, clock=clock)

        gateway.route(ProxyRequest("GET", "user"), timeout=2.5)
        gateway.route(ProxyRequest("GET", "user"))

        assert [timeout for _, timeout in forwarder.calls] == [2.5, 10]

    def test_answer_after_deadline_is_not_a_success(self, three_instances):
        clock = FakeClock()
        forwarder = ScriptedForwarder(on_call=lambda instance: clock.advance(3))
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder, clock=clock)
        ctx = RequestContext(ProxyRequest("GET", "user"), deadline=clock() + 1)

        with pytest.raises(DeadlineExceededError):
            gateway.handle(ctx)
        assert len(forwarder.calls) == 1
        assert RequestState.SUCCEEDED not in ctx.states
        assert ctx.state is RequestState.FAILED

    def test_expired_deadline_before_first_attempt(self, three_instances):
        forwarder = ScriptedForwarder()
        gateway = Gateway(StaticResolver(three_instances), forwarder=forwarder,
                          clock=FakeClock())
        with pytest.raises(DeadlineExceededError):
            gateway.route(ProxyRequest("GET", "user"), timeout=0)
        assert forwarder.calls == []


class TestServicePath:

    @pytest.mark.parametrize("raw,expected", [
        ("/svc/user/users/42", ("user", "/users/42", "")),
        ("/svc/user/users/42?x=1&y=2", ("user", "/users/42", "x=1&y=2")),
        ("/svc/user", ("user", "/", "")),
        ("/svc/user/", ("user", "/", "")),
        ("/svc/order%20svc/a", ("order svc", "/a", "")),
    ])
    def test_parses(self, raw, expected):
        assert parse_service_path(raw) == expected

    @pytest.mark.parametrize("raw", ["/", "/svc", "/svc/", "/users/1", "/api/svc/user"])
    def test_rejects(self, raw):
        assert parse_service_path(raw) is None

    def test_request_target(self):
        assert ProxyRequest("GET", "user", "/a", "b=1").target == "/a?b=1"
        assert ProxyRequest("GET", "user", "/a").target == "/a"
