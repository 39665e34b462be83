"""Frontend service: best-ETA dispatch over the other services and its HTTP server."""

from __future__ import annotations

import json
import posixpath
import sys
import threading
import urllib.parse
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

from telkit.construct import Field
from telkit.context import from_ctx
from telkit.hotrod.customer import Customer, _parse_form, _split_host_port
from telkit.hotrod.driver import Driver
from telkit.hotrod.httperr import handle_error
from telkit.hotrod.pool import Pool
from telkit.hotrod.route import Route
from telkit.hotrod.settings import HotrodSettings

_MICROSECOND = timedelta(microseconds=1)
# Largest representable duration, used as "no route seen yet".
_MAX_ETA = timedelta(microseconds=sys.maxsize // 1000)


class CustomerSource(Protocol):
    def get(self, customer_id: str) -> Customer: ...


class DriverSource(Protocol):
    def find_nearest(self, location: str) -> Sequence[Driver]: ...


class RouteSource(Protocol):
    def find_route(self, pickup: str, dropoff: str) -> Route: ...


class NoRoutesError(LookupError):
    """Raised when no driver could be routed to the customer."""

    def __init__(self, message: str = "no routes found") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class ETAResponse:
    """The chosen driver and the expected time to arrival."""

    driver: str
    eta: timedelta

    def to_json(self) -> dict[str, Any]:
        """JSON form; the ETA is in nanoseconds."""
        return {"Driver": self.driver, "ETA": (self.eta // _MICROSECOND) * 1000}


@dataclass
class ConfigOptions:
    """Addresses of the services and how the frontend is exposed."""

    frontend_host_port: str = ""
    driver_host_port: str = ""
    customer_host_port: str = ""
    route_host_port: str = ""
    basepath: str = ""
    jaeger_ui: str = ""


@dataclass
class _RouteResult:
    driver: str
    route: Route | None
    error: Exception | None


class BestETA:
    """Finds the driver that can reach a customer soonest."""

    def __init__(
        self,
        customers: CustomerSource,
        drivers: DriverSource,
        routes: RouteSource,
        workers: int | None = None,
    ) -> None:
        if workers is None:
            workers = HotrodSettings().route_worker_pool_size
        self.customers = customers
        self.drivers = drivers
        self.routes = routes
        self._pool = Pool(workers)

    def get(self, customer_id: str) -> ETAResponse:
        """The best driver for ``customer_id``; raises what a dependency raises."""
        telemetry = from_ctx()

        customer = self.customers.get(customer_id)
        telemetry.info("Found customer", Field("customer", asdict(customer)))

        drivers = list(self.drivers.find_nearest(customer.location))
        telemetry.info("Found drivers", Field("drivers", [asdict(d) for d in drivers]))

        results = self._get_routes(customer, drivers)
        telemetry.info(
            "Found routes",
            Field("routes", [{"driver": r.driver, "route": r.route} for r in results]),
        )

        best_driver = ""
        best_eta = _MAX_ETA
        for result in results:
            if result.error is not None:
                raise result.error
            assert result.route is not None
            if result.route.eta < best_eta:
                best_eta = result.route.eta
                best_driver = result.driver
        if not best_driver:
            raise NoRoutesError()

        telemetry.info(
            "Dispatch successful", Field("driver", best_driver), Field("eta", str(best_eta))
        )
        return ETAResponse(driver=best_driver, eta=best_eta)

    def _get_routes(self, customer: Customer, drivers: list[Driver]) -> list[_RouteResult]:
        results: list[_RouteResult] = []
        done = threading.Condition()

        def make_job(driver: Driver):
            def job() -> None:
                route: Route | None = None
                error: Exception | None = None
                try:
                    route = self.routes.find_route(driver.location, customer.location)
                except Exception as exc:
                    error = exc
                with done:
                    results.append(_RouteResult(driver.driver_id, route, error))
                    done.notify_all()

            return job

        for driver in drivers:
            self._pool.execute(make_job(driver))

        with done:
            done.wait_for(lambda: len(results) == len(drivers))
        return results

    def close(self) -> None:
        """Stop the worker pool."""
        self._pool.stop()

    def __enter__(self) -> BestETA:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def _clean_path(path: str) -> str:
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class _FrontendHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    options: ConfigOptions
    best_eta: BestETA
    dispatch_path: str
    config_path: str


class _FrontendHandler(BaseHTTPRequestHandler):
    server: _FrontendHTTPServer

    def log_message(self, format: str, *args: Any) -> None:
        pass

    def do_GET(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()

    def _handle(self) -> None:
        url = urllib.parse.urlsplit(self.path)
        if url.path == self.server.dispatch_path:
            self._dispatch(url.query)
        elif url.path == self.server.config_path:
            self._write_json({"jaeger": self.server.options.jaeger_ui})
        else:
            handle_error(self, LookupError("404 page not found"), 404)

    def _dispatch(self, query: str) -> None:
        telemetry = from_ctx()
        telemetry.info(
            "HTTP request received", Field("method", self.command), Field("url", self.path)
        )
        try:
            form = _parse_form(self, query)
        except ValueError as exc:
            handle_error(self, exc, 400)
            return

        customer_id = form.get("customer", [""])[0]
        if not customer_id:
            handle_error(self, ValueError("Missing required 'customer' parameter"), 400)
            return

        try:
            response = self.server.best_eta.get(customer_id)
        except Exception as exc:
            telemetry.error("request failed", Field("error", str(exc)))
            handle_error(self, exc, 500)
            return

        self._write_json(response.to_json())

    def _write_json(self, payload: Any) -> None:
        try:
            data = json.dumps(payload).encode("utf-8")
        except (TypeError, ValueError) as exc:
            from_ctx().error("cannot marshal response", Field("error", str(exc)))
            handle_error(self, exc, 500)
            return
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class FrontendServer:
    """HTTP server answering ``<basepath>/dispatch`` and ``<basepath>/config``."""

    def __init__(self, options: ConfigOptions, best_eta: BestETA) -> None:
        self.options = options
        self.best_eta = best_eta
        base = _clean_path("/" + options.basepath)
        self._httpd = _FrontendHTTPServer(
            _split_host_port(options.frontend_host_port), _FrontendHandler
        )
        self._httpd.options = options
        self._httpd.best_eta = best_eta
        self._httpd.dispatch_path = _clean_path(base + "/dispatch")
        self._httpd.config_path = _clean_path(base + "/config")
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
        location = _clean_path(self.address + "/" + self.options.basepath).rstrip("/")
        from_ctx().info("Starting", Field("address", "http://" + location))
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