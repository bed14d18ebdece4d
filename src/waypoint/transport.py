"""JSON-over-HTTP plumbing shared by the registry server and its clients."""

import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from http.server import BaseHTTPRequestHandler
from typing import Any, Optional, Tuple

from .errors import ERRORS_BY_KIND, RegistryUnavailableError, WaypointError

MAX_CHUNK_LINE = 1024


class BadRequest(Exception):
    """Malformed request body or parameters (answered with 400)."""


class JSONRequestHandler(BaseHTTPRequestHandler):
    """Request handler base with JSON helpers."""

    def log_message(self, format, *args):
        # Silence default stderr logging
        pass

    def _json_response(self, data: Any, status: int = 200):
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _empty_response(self, status: int):
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _error_response(self, exc: WaypointError):
        self._json_response(exc.to_dict(), status=exc.status_code)

    def _read_body(self) -> bytes:
        """Read the request body, framed by Content-Length or chunked encoding."""
        encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in encoding.lower():
            return self._read_chunked()
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError as exc:
            raise BadRequest(f"invalid Content-Length: {exc}") from exc
        return self.rfile.read(length) if length > 0 else b""

    def _read_chunked(self) -> bytes:
        chunks = []
        while True:
            line = self.rfile.readline(MAX_CHUNK_LINE + 1)
            if len(line) > MAX_CHUNK_LINE:
                raise BadRequest("chunk size line too long")
            try:
                size = int(line.split(b";", 1)[0].strip(), 16)
            except ValueError as exc:
                raise BadRequest(f"invalid chunk size: {line!r}") from exc
            if size < 0:
                raise BadRequest(f"invalid chunk size: {line!r}")
            if size == 0:
                break
            chunk = self.rfile.read(size)
            if len(chunk) < size:
                raise BadRequest("truncated chunked body")
            chunks.append(chunk)
            self.rfile.readline(MAX_CHUNK_LINE + 1)
        # Trailer section ends with an empty line
        while True:
            trailer = self.rfile.readline(MAX_CHUNK_LINE + 1)
            if trailer in (b"\r\n", b"\n", b""):
                break
        return b"".join(chunks)

    def _read_json(self) -> Any:
        raw = self._read_body()
        if not raw:
            return {}
        try:
            return json.loads(raw.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BadRequest(f"invalid JSON body: {exc}") from exc

    def _split_path(self) -> Tuple[list, dict]:
        parsed = urllib.parse.urlparse(self.path)
        parts = [urllib.parse.unquote(p) for p in parsed.path.split("/") if p]
        qs = urllib.parse.parse_qs(parsed.query)
        return parts, {k: v[0] for k, v in qs.items()}


class JSONHTTPClient:
    """Thin urllib client that raises the Waypoint error taxonomy.

    Error bodies of the form ``{"error": ..., "kind": ...}`` are turned back
    into the matching exception class. Connection problems become
    :class:`RegistryUnavailableError`.
    """

    def __init__(self, host: str = "localhost", port: int = 8471, timeout: float = 10.0):
        self._base = f"http://{host}:{port}"
        self._timeout = timeout
        # Registry traffic stays on the internal network; ignore http_proxy.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @property
    def base_url(self) -> str:
        return self._base

    def _request(self, method: str, path: str, payload: Any = None,
                 timeout: Optional[float] = None) -> Tuple[int, Any]:
        url = f"{self._base}{path}"
        data = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, method=method, headers=headers)
        try:
            with self._opener.open(req, timeout=timeout or self._timeout) as resp:
                raw = resp.read()
                return resp.status, json.loads(raw.decode()) if raw else None
        except urllib.error.HTTPError as exc:
            if exc.code in (204, 304):
                return exc.code, None
            raise _error_from_response(exc) from exc
        except (urllib.error.URLError, socket.timeout, OSError) as exc:
            raise RegistryUnavailableError(f"{method} {url} failed: {exc}") from exc


def _error_from_response(exc: urllib.error.HTTPError) -> Exception:
    try:
        body = json.loads(exc.read().decode() or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        body = {}
    cls = ERRORS_BY_KIND.get(body.get("kind"))
    message = body.get("error") or f"HTTP {exc.code}"
    if cls is not None:
        return cls(message)
    if exc.code >= 500:
        return RegistryUnavailableError(message)
    return ValueError(message)
