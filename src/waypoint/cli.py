"""CLI entry point for Waypoint."""

import argparse
import json
import sys
import threading

import yaml

from .client import RegistryClient
from .config import WaypointConfig, config_to_yaml, load_config, merge_cli_args, validate_config
from .config_distributor import NOT_MODIFIED, ConfigDistributor, ConfigHTTPClient, ConfigLog
from .errors import WaypointError
from .gateway import Gateway, start_gateway_server
from .heartbeat import HealthMonitor
from .registry import RegistryHTTPClient, RegistryStore, start_registry_server


def _build_config(args) -> WaypointConfig:
    """Build a WaypointConfig from a config file + CLI overrides."""
    try:
        if getattr(args, "config", None):
            config = load_config(args.config)
        else:
            config = WaypointConfig()
        merge_cli_args(config, args)
        validate_config(config)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    return config


def _wait_forever() -> None:
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("Shutting down...", file=sys.stderr)


def _add_config_file_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=str, help="Path to YAML config file")


def _add_remote_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-host/--registry-port to a sub-parser that talks to a registry."""
    parser.add_argument(
        "--registry-host", type=str, default="localhost",
        help="Hostname of the registry server (default: localhost)",
    )
    parser.add_argument(
        "--registry-port", type=int, default=8471,
        help="Port of the registry HTTP API (default: 8471)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


# ---------------------------------------------------------------------------
# waypoint registry
# ---------------------------------------------------------------------------

def cmd_registry_serve(args) -> None:
    """Run the registry, health monitor and configuration distributor."""
    config = _build_config(args)

    store = RegistryStore()
    log = ConfigLog(config.config_log) if config.config_log else None
    distributor = ConfigDistributor(history_limit=config.config_history, log=log)
    monitor = HealthMonitor(
        store,
        interval=config.monitor_interval,
        eviction_threshold=config.eviction_threshold,
        eviction_grace=config.eviction_grace,
    )

    server = start_registry_server(
        store, distributor, host=config.registry_bind, port=config.registry_port,
    )
    monitor.start()
    print(
        f"Registry server listening on {config.registry_bind}:{config.registry_port}"
        f" (eviction after {config.eviction_threshold:g}s + {config.eviction_grace:g}s grace)",
        file=sys.stderr,
    )
    _wait_forever()
    monitor.stop()
    server.shutdown()


def _format_instances(instances, fmt: str) -> str:
    """Format a list of ServiceInstance objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in instances], indent=2)
    lines = []
    for s in instances:
        lines.append(
            f"{s.service_name}  {s.instance_id}  {s.address}  {s.status.value}"
            f"  last_heartbeat={s.last_heartbeat_at:.1f}"
        )
    return "\n".join(lines) if lines else "(no instances)"


def _registry_client(args) -> RegistryHTTPClient:
    return RegistryHTTPClient(host=args.registry_host, port=args.registry_port)


def cmd_registry_list(args) -> None:
    client = _registry_client(args)
    if args.all:
        instances = client.all_instances(args.service)
    elif args.service:
        instances = client.list_instances(args.service)
    else:
        print("Error: a service name is required unless --all is given.", file=sys.stderr)
        sys.exit(1)
    print(_format_instances(instances, args.format))


def cmd_registry_get(args) -> None:
    client = _registry_client(args)
    instance = client.get_instance(args.instance_id)
    if instance is None:
        print(f"Instance '{args.instance_id}' not found.", file=sys.stderr)
        sys.exit(1)
    print(_format_instances([instance], args.format))


def cmd_registry_services(args) -> None:
    services = _registry_client(args).services()
    if args.format == "json":
        print(json.dumps(services, indent=2))
    elif not services:
        print("(no services)")
    else:
        for name, up in services.items():
            print(f"{name}  up={up}")


def cmd_registry_count(args) -> None:
    client = _registry_client(args)
    print(len(client.all_instances(args.service)))


# ---------------------------------------------------------------------------
# waypoint gateway
# ---------------------------------------------------------------------------

def cmd_gateway_serve(args) -> None:
    """Run the routing gateway against a remote registry."""
    config = _build_config(args)

    resolver = RegistryClient(
        RegistryHTTPClient(host=config.registry_host, port=config.registry_port),
        refresh_interval=config.refresh_interval,
        stale_threshold=config.stale_threshold,
    )
    resolver.start()
    gateway = Gateway(
        resolver,
        max_attempts=config.max_attempts,
        request_timeout=config.request_timeout,
        default_deadline=config.default_deadline,
    )
    server = start_gateway_server(gateway, host=config.gateway_bind, port=config.gateway_port)
    print(
        f"Gateway listening on {config.gateway_bind}:{config.gateway_port},"
        f" registry at {config.registry_host}:{config.registry_port}",
        file=sys.stderr,
    )
    _wait_forever()
    server.shutdown()
    resolver.stop()


# ---------------------------------------------------------------------------
# waypoint config
# ---------------------------------------------------------------------------

def _parse_entries(pairs: list[str]) -> dict[str, str]:
    entries = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got '{pair}'")
        entries[key] = value
    return entries


def _config_client(args) -> ConfigHTTPClient:
    return ConfigHTTPClient(host=args.registry_host, port=args.registry_port)


def _format_bundle(bundle, fmt: str) -> str:
    if fmt == "json":
        return json.dumps(bundle.to_dict(), indent=2)
    lines = [f"# {bundle.service_name} v{bundle.version}"]
    lines.extend(f"{k}={v}" for k, v in sorted(bundle.entries.items()))
    return "\n".join(lines)


def cmd_config_publish(args) -> None:
    entries = {}
    if args.file:
        with open(args.file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            print(f"Error: '{args.file}' must contain a mapping.", file=sys.stderr)
            sys.exit(1)
        entries.update({str(k): str(v) for k, v in data.items()})
    try:
        entries.update(_parse_entries(args.entries))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    version = _config_client(args).publish(args.service, entries)
    print(version)


def cmd_config_fetch(args) -> None:
    result = _config_client(args).fetch(args.service, args.known_version)
    if result is NOT_MODIFIED:
        print(f"{args.service} is unchanged at v{args.known_version}", file=sys.stderr)
        return
    print(_format_bundle(result, args.format))


def cmd_config_history(args) -> None:
    bundles = _config_client(args).history(args.service)
    if args.format == "json":
        print(json.dumps([b.to_dict() for b in bundles], indent=2))
        return
    for b in bundles:
        print(f"v{b.version}  published_at={b.published_at:.1f}  keys={len(b.entries)}")


def cmd_config_rollback(args) -> None:
    version = _config_client(args).rollback(args.service, args.version)
    print(version)


def cmd_show_config(args) -> None:
    print(config_to_yaml(_build_config(args)), end="")


def _add_settings_args(parser: argparse.ArgumentParser, gateway: bool) -> None:
    """Flags that override WaypointConfig fields for the serve commands."""
    _add_config_file_arg(parser)
    parser.add_argument("--registry-port", type=int, dest="registry_port",
                        help="Port of the registry HTTP API (default: 8471)")
    if gateway:
        parser.add_argument("--registry-host", type=str, dest="registry_host",
                            help="Host the gateway uses to reach the registry")
        parser.add_argument("--refresh-interval", type=float, dest="refresh_interval",
                            help="Seconds between instance list refreshes (default: 5)")
        parser.add_argument("--stale-threshold", type=float, dest="stale_threshold",
                            help="Cache age in seconds that triggers a staleness warning (default: 30)")
        parser.add_argument("--bind", type=str, dest="gateway_bind",
                            help="Address the gateway listens on (default: 0.0.0.0)")
        parser.add_argument("--port", type=int, dest="gateway_port",
                            help="Gateway port (default: 8080)")
        parser.add_argument("--max-attempts", type=int, dest="max_attempts",
                            help="Forwarding attempts per request (default: 3)")
        parser.add_argument("--request-timeout", type=float, dest="request_timeout",
                            help="Per-attempt upstream timeout in seconds (default: 10)")
        parser.add_argument("--default-deadline", type=float, dest="default_deadline",
                            help="Deadline for requests without X-Request-Timeout (default: 30)")
    else:
        parser.add_argument("--bind", type=str, dest="registry_bind",
                            help="Address the registry listens on (default: 0.0.0.0)")
        parser.add_argument("--monitor-interval", type=float, dest="monitor_interval",
                            help="Seconds between health sweeps (default: 10)")
        parser.add_argument("--eviction-threshold", type=float, dest="eviction_threshold",
                            help="Seconds of silence before an instance is marked DOWN (default: 30)")
        parser.add_argument("--eviction-grace", type=float, dest="eviction_grace",
                            help="Further seconds before a DOWN instance is evicted (default: 30)")
        parser.add_argument("--config-history", type=int, dest="config_history",
                            help="Config versions retained per service (default: 5)")
        parser.add_argument("--config-log", type=str, dest="config_log",
                            help="Append-only file used to persist published config")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="waypoint",
        description="Waypoint: service registry, config distributor and routing gateway",
    )
    subparsers = parser.add_subparsers(dest="command")

    # registry
    registry_parser = subparsers.add_parser("registry", help="Run or query the service registry")
    registry_sub = registry_parser.add_subparsers(dest="registry_command")

    reg_serve = registry_sub.add_parser("serve", help="Run the registry and config server")
    _add_settings_args(reg_serve, gateway=False)
    reg_serve.set_defaults(func=cmd_registry_serve)

    reg_list = registry_sub.add_parser("list", help="List instances of a service")
    _add_remote_args(reg_list)
    reg_list.add_argument("service", nargs="?", default=None, help="Logical service name")
    reg_list.add_argument("--all", action="store_true",
                          help="Include instances that are not UP")
    reg_list.set_defaults(func=cmd_registry_list)

    reg_get = registry_sub.add_parser("get", help="Get a single instance by ID")
    _add_remote_args(reg_get)
    reg_get.add_argument("instance_id", type=str, help="Instance identifier")
    reg_get.set_defaults(func=cmd_registry_get)

    reg_services = registry_sub.add_parser("services", help="List services and UP counts")
    _add_remote_args(reg_services)
    reg_services.set_defaults(func=cmd_registry_services)

    reg_count = registry_sub.add_parser("count", help="Count registered instances")
    _add_remote_args(reg_count)
    reg_count.add_argument("--service", type=str, default=None, help="Filter by service name")
    reg_count.set_defaults(func=cmd_registry_count)

    # gateway
    gateway_parser = subparsers.add_parser("gateway", help="Run the routing gateway")
    gateway_sub = gateway_parser.add_subparsers(dest="gateway_command")
    gw_serve = gateway_sub.add_parser("serve", help="Serve /svc/{service}/... requests")
    _add_settings_args(gw_serve, gateway=True)
    gw_serve.set_defaults(func=cmd_gateway_serve)

    # config
    config_parser = subparsers.add_parser("config", help="Publish or read service configuration")
    config_sub = config_parser.add_subparsers(dest="config_command")

    cfg_publish = config_sub.add_parser("publish", help="Publish a new configuration version")
    _add_remote_args(cfg_publish)
    cfg_publish.add_argument("service", type=str, help="Logical service name")
    cfg_publish.add_argument("entries", nargs="*", help="KEY=VALUE pairs")
    cfg_publish.add_argument("--file", type=str, default=None,
                             help="YAML mapping of entries (KEY=VALUE pairs override it)")
    cfg_publish.set_defaults(func=cmd_config_publish)

    cfg_fetch = config_sub.add_parser("fetch", help="Fetch the latest configuration")
    _add_remote_args(cfg_fetch)
    cfg_fetch.add_argument("service", type=str, help="Logical service name")
    cfg_fetch.add_argument("--known-version", type=int, dest="known_version", default=None,
                           help="Version already held; prints nothing if still current")
    cfg_fetch.set_defaults(func=cmd_config_fetch)

    cfg_history = config_sub.add_parser("history", help="Show retained versions")
    _add_remote_args(cfg_history)
    cfg_history.add_argument("service", type=str, help="Logical service name")
    cfg_history.set_defaults(func=cmd_config_history)

    cfg_rollback = config_sub.add_parser("rollback", help="Republish a retained version")
    _add_remote_args(cfg_rollback)
    cfg_rollback.add_argument("service", type=str, help="Logical service name")
    cfg_rollback.add_argument("version", type=int, help="Version to restore")
    cfg_rollback.set_defaults(func=cmd_config_rollback)

    # show-config
    show_parser = subparsers.add_parser("show-config", help="Print the effective configuration")
    _add_config_file_arg(show_parser)
    show_parser.set_defaults(func=cmd_show_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "registry" and not args.registry_command:
        registry_parser.print_help()
        sys.exit(1)
    if args.command == "gateway" and not args.gateway_command:
        gateway_parser.print_help()
        sys.exit(1)
    if args.command == "config" and not args.config_command:
        config_parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except WaypointError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
