"""Demo HTTP server with hello, crash and error endpoints, and its client."""

from __future__ import annotations

import random
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

from telkit.construct import Field
from telkit.context import from_ctx
from telkit.hotrod.customer import _log_access, _split_host_port
from telkit.hotrod.httperr import handle_error
from telkit.hotrod.route import _parse_baggage

# How long the crash endpoint stalls before failing, in seconds.
CRASH_DELAY = 1.0
USERNAME_KEY = "username"
CLIENT_BAGGAGE = "username=donuts"


class Downstream(Protocol):
    def do(self, baggage: Mapping[str, str]) -> Any: ...


class _DemoHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    owner: DemoServer


class _DemoHandler(BaseHTTPRequestHandler):
    server: _DemoHTTPServer

    def log_message(self, format: str, *args: Any) -> None:
        _log_access(self, format, *args)

    def do_GET(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()

    def _handle(self) -> None:
        path = urllib.parse.urlsplit(self.path).path
        endpoints = {"/hello": self._hello, "/crash": self._crash, "/error": self._error}
        endpoint = endpoints.get(path)
        if endpoint is None:
            handle_error(self, LookupError("404 page not found"), 404)
            return
        endpoint()

    def _write(self, status: int, body: bytes) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _hello(self) -> None:
        owner = self.server.owner
        baggage = _parse_baggage(self.headers.get("baggage", ""))
        from_ctx().info("handling this...", Field(USERNAME_KEY, baggage.get(USERNAME_KEY, "")))
        if owner.downstream is not None:
            owner.downstream.do(baggage)
        self._write(200, b"Hello, world!\n")

    def _crash(self) -> None:
        time.sleep(self.server.owner.crash_delay)
        self._write(500, b"")
        from_ctx().error("panic recovered", Field("error", "some crash happened"))

    def _error(self) -> None:
        code = self.server.owner._next_error_code()
        self._write(code, b"")
        from_ctx().info(
            "this message will be saved both in log and trace", Field("code", code)
        )


class DemoServer:
    """HTTP server answering ``/hello``, ``/crash`` and ``/error``."""

    def __init__(
        self,
        address: str,
        downstream: Downstream | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.downstream = downstream
        self.crash_delay = CRASH_DELAY
        self._rng = rng if rng is not None else random.Random()
        self._rng_lock = threading.Lock()
        self._httpd = _DemoHTTPServer(_split_host_port(address), _DemoHandler)
        self._httpd.owner = self
        host, port = self._httpd.server_address[:2]
        self.address = f"{host}:{port}"
        self._state = threading.Lock()
        self._serving = False
        self._closed = False

    def _next_error_code(self) -> int:
        with self._rng_lock:
            code = self._rng.randrange(11) + 500
        return 200 if code == 509 else code

    def serve_forever(self) -> None:
        """Serve requests until shutdown is called."""
        with self._state:
            if self._closed:
                return
            self._serving = True
        self._httpd.serve_forever()

    def shutdown(self) -> None:
        """Stop serving and release the socket."""
        with self._state:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
        if serving:
            self._httpd.shutdown()
        self._httpd.server_close()
        from_ctx().info("http down")


class DemoClient:
    """Client of the demo server that sends a fixed baggage member."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        try:
            parts = urllib.parse.urlsplit(base_url)
            parts.port
        except ValueError as exc:
            raise ValueError(f"parse url {base_url!r}: {exc}") from exc
        self._base = parts
        self.timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def get(self, path: str) -> tuple[int, bytes]:
        """GET ``path`` on the server; returns the status code and body."""
        url = urllib.parse.urlunsplit(self._base._replace(path=path))
        request = urllib.request.Request(url, headers={"baggage": CLIENT_BAGGAGE})
        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                status = response.status
                try:
                    body = response.read()
                except OSError as exc:
                    raise OSError(f"http client: read: {exc}") from exc
        except urllib.error.HTTPError as exc:
            return exc.code, exc.read()
        except (urllib.error.URLError, ConnectionError, TimeoutError) as exc:
            raise ConnectionError(f"http client: do addr: {url}: {exc}") from exc
        return status, body