"""Route service: route computation, calculation stats, HTTP server and client."""

from __future__ import annotations

import json
import random
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from telkit.construct import Field
from telkit.context import from_ctx
from telkit.hotrod import delay
from telkit.hotrod.customer import _log_access, _parse_form, _split_host_port
from telkit.hotrod.httperr import handle_error
from telkit.hotrod.settings import HotrodSettings

ROUTE_CALC_BY_CUSTOMER = "route.calc.by.customer.sec"
ROUTE_CALC_BY_SESSION = "route.calc.by.session.sec"

_STATS = ((ROUTE_CALC_BY_CUSTOMER, "customer"), (ROUTE_CALC_BY_SESSION, "session"))

_MICROSECOND = timedelta(microseconds=1)
_MILLISECOND = timedelta(milliseconds=1)


@dataclass(frozen=True)
class Route:
    """A route between pickup and dropoff with the expected time to arrival."""

    pickup: str
    dropoff: str
    eta: timedelta

    def to_json(self) -> dict[str, Any]:
        """JSON form; the ETA is in nanoseconds."""
        return {
            "Pickup": self.pickup,
            "Dropoff": self.dropoff,
            "ETA": (self.eta // _MICROSECOND) * 1000,
        }

    @classmethod
    def from_json(cls, data: Any) -> Route:
        """Build a Route from its JSON form; keys match case-insensitively."""
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        lowered = {str(k).lower(): v for k, v in data.items()}
        eta = lowered.get("eta", 0)
        if isinstance(eta, bool) or not isinstance(eta, int):
            raise ValueError(f"ETA must be an integer number of nanoseconds, got {eta!r}")
        return cls(
            pickup=str(lowered.get("pickup", "")),
            dropoff=str(lowered.get("dropoff", "")),
            eta=timedelta(microseconds=eta // 1000),
        )


class RouteRequestError(Exception):
    """Raised when the route service answers with an error status."""


class CalcStats:
    """Accumulated route calculation time, keyed by baggage members."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._maps: dict[str, dict[str, float]] = {name: {} for name, _ in _STATS}

    def update(self, baggage: Mapping[str, str], delay: timedelta | float) -> None:
        """Add ``delay`` (whole milliseconds, in seconds) for each present member."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        delay_sec = (delay // _MILLISECOND) / 1000.0
        with self._lock:
            for name, member in _STATS:
                if member in baggage:
                    entries = self._maps[name]
                    entries[member] = entries.get(member, 0.0) + delay_sec

    def snapshot(self) -> dict[str, dict[str, float]]:
        """A copy of every stats map."""
        with self._lock:
            return {name: dict(entries) for name, entries in self._maps.items()}


DEFAULT_STATS = CalcStats()


def compute_route(
    pickup: str,
    dropoff: str,
    settings: HotrodSettings | None = None,
    rng: random.Random | None = None,
    stats: CalcStats | None = None,
    baggage: Mapping[str, str] | None = None,
) -> Route:
    """Simulate an expensive route calculation and record how long it took."""
    settings = settings if settings is not None else HotrodSettings()
    stats = stats if stats is not None else DEFAULT_STATS
    source = rng if rng is not None else random
    start = time.monotonic()
    try:
        delay.sleep(settings.route_calc_delay, settings.route_calc_delay_std_dev, rng)
        eta = max(2.0, source.gauss(0.0, 1.0) * 3 + 5)
        return Route(pickup=pickup, dropoff=dropoff, eta=timedelta(minutes=int(eta)))
    finally:
        stats.update(baggage or {}, timedelta(seconds=time.monotonic() - start))


def _parse_baggage(header: str) -> dict[str, str]:
    members: dict[str, str] = {}
    for item in header.split(","):
        name, sep, rest = item.partition("=")
        name = name.strip()
        if sep and name:
            members[name] = urllib.parse.unquote(rest.split(";", 1)[0].strip())
    return members


class _RouteHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    settings: HotrodSettings
    rng: random.Random | None
    stats: CalcStats


class _RouteHandler(BaseHTTPRequestHandler):
    server: _RouteHTTPServer

    def log_message(self, format: str, *args: Any) -> None:
        _log_access(self, format, *args)

    def do_GET(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()

    def _send_json(self, payload: Any) -> None:
        data = json.dumps(payload).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _handle(self) -> None:
        url = urllib.parse.urlsplit(self.path)
        if url.path == "/debug/vars":
            self._send_json(self.server.stats.snapshot())
            return
        if url.path != "/route":
            handle_error(self, LookupError("404 page not found"), 404)
            return

        telemetry = from_ctx()
        telemetry.info(
            "HTTP request received", Field("method", self.command), Field("url", self.path)
        )

        try:
            form = _parse_form(self, url.query)
        except ValueError as exc:
            telemetry.error("bad request", Field("error", str(exc)))
            handle_error(self, exc, 400)
            return

        pickup = form.get("pickup", [""])[0]
        if not pickup:
            handle_error(self, ValueError("Missing required 'pickup' parameter"), 400)
            return
        dropoff = form.get("dropoff", [""])[0]
        if not dropoff:
            handle_error(self, ValueError("Missing required 'dropoff' parameter"), 400)
            return

        route = compute_route(
            pickup,
            dropoff,
            self.server.settings,
            self.server.rng,
            self.server.stats,
            _parse_baggage(self.headers.get("baggage", "")),
        )
        self._send_json(route.to_json())


class RouteServer:
    """HTTP server answering ``/route?pickup=..&dropoff=..`` and ``/debug/vars``."""

    def __init__(
        self,
        address: str,
        settings: HotrodSettings | None = None,
        rng: random.Random | None = None,
        stats: CalcStats | None = None,
    ) -> None:
        self.settings = settings if settings is not None else HotrodSettings()
        self.stats = stats if stats is not None else DEFAULT_STATS
        self._httpd = _RouteHTTPServer(_split_host_port(address), _RouteHandler)
        self._httpd.settings = self.settings
        self._httpd.rng = rng
        self._httpd.stats = self.stats
        host, port = self._httpd.server_address[:2]
        self.address = f"{host}:{port}"
        self._state = threading.Lock()
        self._serving = False
        self._closed = False

    def serve_forever(self) -> None:
        """Serve requests until shutdown is called."""
        with self._state:
            if self._closed:
                return
            self._serving = True
        from_ctx().info("Starting", Field("address", "http://" + self.address))
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


class RouteClient:
    """Remote client of the route service."""

    def __init__(self, host_port: str, timeout: float = 10.0) -> None:
        self.host_port = host_port
        self.timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def get_json(self, url: str) -> Any:
        """GET ``url`` and decode the JSON body; error statuses raise RouteRequestError."""
        try:
            with self._opener.open(url, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            if exc.code >= 400:
                raise RouteRequestError(exc.read().decode("utf-8", "replace")) from exc
            raise
        return json.loads(payload)

    def find_route(self, pickup: str, dropoff: str) -> Route:
        """Ask the route service for a route from ``pickup`` to ``dropoff``."""
        telemetry = from_ctx()
        telemetry.info("Finding route", Field("pickup", pickup), Field("dropoff", dropoff))
        query = urllib.parse.urlencode(sorted({"pickup": pickup, "dropoff": dropoff}.items()))
        url = f"http://{self.host_port}/route?{query}"
        try:
            return Route.from_json(self.get_json(url))
        except (RouteRequestError, OSError, ValueError) as exc:
            telemetry.error("Error getting route", Field("error", str(exc)))
            raise