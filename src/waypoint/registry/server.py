"""HTTP API for the registry store and the configuration distributor."""

import sys
import threading
from http.server import ThreadingHTTPServer
from typing import Optional

from ..config_distributor import NOT_MODIFIED, ConfigDistributor
from ..errors import UnknownInstanceError, WaypointError
from ..transport import BadRequest, JSONRequestHandler
from .service_registry import InstanceStatus, RegistryStore, ServiceInstance

# Upper bound for a single /watch long-poll
MAX_WATCH_SECONDS = 30.0


def _make_handler(store: RegistryStore, distributor: Optional[ConfigDistributor]):
    """Create a handler class bound to the given store and distributor."""

    class RegistryHTTPHandler(JSONRequestHandler):

        def _dispatch(self, route):
            parts, qs = self._split_path()
            try:
                route(parts, qs)
            except WaypointError as exc:
                self._error_response(exc)
            except (BadRequest, ValueError, KeyError, TypeError) as exc:
                self._json_response({"error": str(exc), "kind": "BadRequest"}, status=400)

        def _not_found(self):
            self._json_response({"error": "not found", "kind": "NotFound"}, status=404)

        def do_GET(self):
            self._dispatch(self._get)

        def do_POST(self):
            self._dispatch(self._post)

        def do_PUT(self):
            self._dispatch(self._put)

        def do_DELETE(self):
            self._dispatch(self._delete)

        # -- GET -------------------------------------------------------------

        def _get(self, parts, qs):
            if parts == ["health"]:
                self._json_response({"status": "UP", "revision": store.revision})

            elif parts == ["instances"]:
                service = qs.get("service")
                if qs.get("all") in ("1", "true"):
                    instances = store.all_instances(service)
                elif service:
                    instances = store.list_instances(service)
                else:
                    raise BadRequest("service query parameter is required")
                self._json_response([s.to_dict() for s in instances])

            elif len(parts) == 2 and parts[0] == "instances":
                info = store.get_instance(parts[1])
                if info is None:
                    self._json_response(
                        {"error": f"unknown instance {parts[1]}", "kind": "UnknownInstanceError"},
                        status=404,
                    )
                else:
                    self._json_response(info.to_dict())

            elif parts == ["services"]:
                self._json_response({
                    name: len(store.list_instances(name)) for name in store.service_names()
                })

            elif parts and parts[0] == "config" and distributor is not None:
                self._get_config(parts[1:], qs)

            else:
                self._not_found()

        def _get_config(self, parts, qs):
            if len(parts) == 1:
                known = qs.get("version")
                result = distributor.fetch(parts[0], int(known) if known is not None else None)
                if result is NOT_MODIFIED:
                    self._empty_response(304)
                else:
                    self._json_response(result.to_dict())

            elif len(parts) == 2 and parts[1] == "history":
                self._json_response([b.to_dict() for b in distributor.history(parts[0])])

            elif len(parts) == 2 and parts[1] == "watch":
                after = int(qs.get("after", 0))
                timeout = min(float(qs.get("timeout", MAX_WATCH_SECONDS)), MAX_WATCH_SECONDS)
                version = distributor.wait_for_version(parts[0], after, timeout)
                if version is None:
                    self._empty_response(204)
                else:
                    self._json_response({"service_name": parts[0], "version": version})

            else:
                self._not_found()

        # -- POST / PUT / DELETE -----------------------------------------------

        def _post(self, parts, qs):
            if parts == ["instances"]:
                instance = ServiceInstance.from_dict(self._read_json())
                instance_id = store.register(instance)
                print(f"[registry] registered {instance.service_name}/{instance_id}"
                      f" at {instance.address}", file=sys.stderr)
                committed = store.get_instance(instance_id)
                if committed is None:
                    raise UnknownInstanceError(
                        f"instance {instance_id} was deregistered during registration"
                    )
                self._json_response(committed.to_dict(), status=201)

            elif len(parts) == 2 and parts[0] == "config" and distributor is not None:
                body = self._read_json()
                entries = body.get("entries")
                if not isinstance(entries, dict):
                    raise BadRequest("entries must be a JSON object")
                version = distributor.publish(parts[1], entries)
                print(f"[config] published {parts[1]} v{version}", file=sys.stderr)
                self._json_response({"service_name": parts[1], "version": version}, status=201)

            elif (len(parts) == 3 and parts[0] == "config" and parts[2] == "rollback"
                  and distributor is not None):
                target = int(self._read_json()["version"])
                version = distributor.rollback(parts[1], target)
                print(f"[config] rolled back {parts[1]} to v{target} as v{version}",
                      file=sys.stderr)
                self._json_response({"service_name": parts[1], "version": version}, status=201)

            else:
                self._not_found()

        def _put(self, parts, qs):
            if len(parts) == 3 and parts[0] == "instances" and parts[2] == "heartbeat":
                self._json_response(store.heartbeat(parts[1]).to_dict())

            elif len(parts) == 3 and parts[0] == "instances" and parts[2] == "status":
                status = InstanceStatus(self._read_json().get("status"))
                info = store.set_status(parts[1], status)
                print(f"[registry] {parts[1]} set to {status.value}", file=sys.stderr)
                self._json_response(info.to_dict())

            else:
                self._not_found()

        def _delete(self, parts, qs):
            if len(parts) == 2 and parts[0] == "instances":
                removed = store.deregister(parts[1])
                if removed:
                    print(f"[registry] deregistered {parts[1]}", file=sys.stderr)
                self._json_response({"instance_id": parts[1], "removed": removed})
            else:
                self._not_found()

    return RegistryHTTPHandler


def start_registry_server(
    store: RegistryStore,
    distributor: Optional[ConfigDistributor] = None,
    host: str = "0.0.0.0",
    port: int = 8471,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(store, distributor)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
