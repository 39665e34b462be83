"""Command line for the ride-dispatch tracing demo services."""

from __future__ import annotations

import argparse
import functools
import json
import threading
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable, Sequence
from datetime import timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Protocol

from telkit.config import default_config, default_debug_config, parse_duration
from telkit.construct import Field, Telemetry
from telkit.context import from_ctx, wrap_context
from telkit.hotrod.customer import CustomerClient, CustomerDatabase, CustomerServer, _split_host_port
from telkit.hotrod.driver import Driver, DriverService, Redis
from telkit.hotrod.frontend import BestETA, ConfigOptions, FrontendServer
from telkit.hotrod.httperr import handle_error
from telkit.hotrod.route import RouteClient, RouteServer
from telkit.hotrod.settings import HotrodSettings

DEFAULT_CUSTOMER_PORT = 8081
DEFAULT_DRIVER_PORT = 8082
DEFAULT_FRONTEND_PORT = 8080
DEFAULT_ROUTE_PORT = 8083
DEFAULT_DB_QUERY_DELAY = timedelta(milliseconds=300)
DEFAULT_ROUTE_WORKER_POOL_SIZE = 3
DEFAULT_JAEGER_UI = "http://localhost:16686"
LISTEN_HOST = "0.0.0.0"

_DRIVER_PATH = "/nearest"


class _Server(Protocol):
    def serve_forever(self) -> None: ...

    def shutdown(self) -> None: ...


@functools.lru_cache(maxsize=None)
def _global_telemetry() -> Telemetry:
    return Telemetry(default_config())


def duration(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None


def _add_flags(parser: argparse.ArgumentParser, suppress: bool) -> None:
    def default(value: Any) -> Any:
        return argparse.SUPPRESS if suppress else value

    parser.add_argument(
        "-D", "--fix-db-query-delay", type=duration, default=default(DEFAULT_DB_QUERY_DELAY),
        help="Average latency of MySQL DB query",
    )
    parser.add_argument(
        "-M", "--fix-disable-db-conn-mutex", action="store_true", default=default(False),
        help="Disables the mutex guarding db connection",
    )
    parser.add_argument(
        "-W", "--fix-route-worker-pool-size", type=int,
        default=default(DEFAULT_ROUTE_WORKER_POOL_SIZE), help="Default worker pool size",
    )
    parser.add_argument(
        "-c", "--customer-service-port", type=int, default=default(DEFAULT_CUSTOMER_PORT),
        help="Port for customer service",
    )
    parser.add_argument(
        "-d", "--driver-service-port", type=int, default=default(DEFAULT_DRIVER_PORT),
        help="Port for driver service",
    )
    parser.add_argument(
        "-f", "--frontend-service-port", type=int, default=default(DEFAULT_FRONTEND_PORT),
        help="Port for frontend service",
    )
    parser.add_argument(
        "-r", "--route-service-port", type=int, default=default(DEFAULT_ROUTE_PORT),
        help="Port for routing service",
    )
    parser.add_argument(
        "-b", "--basepath", default=default(""),
        help='Basepath for frontend service (default "/")',
    )
    parser.add_argument(
        "-j", "--jaeger-ui", default=default(DEFAULT_JAEGER_UI),
        help="Address of Jaeger UI to create [find trace] links",
    )


def build_parser() -> argparse.ArgumentParser:
    """Parser with the shared flags and one subcommand per service."""
    parser = argparse.ArgumentParser(
        prog="examples-hotrod", description="HotR.O.D. - A tracing demo application."
    )
    _add_flags(parser, suppress=False)
    commands = parser.add_subparsers(dest="command", metavar="command")
    for name, text in (
        ("all", "Starts all services"),
        ("customer", "Starts Customer service"),
        ("driver", "Starts Driver service"),
        ("frontend", "Starts Frontend service"),
        ("route", "Starts Route service"),
    ):
        sub = commands.add_parser(name, help=text, description=text + ".")
        _add_flags(sub, suppress=True)
    return parser


def apply_fixes(args: argparse.Namespace, settings: HotrodSettings | None = None) -> HotrodSettings:
    """Apply the ``--fix-*`` flags to ``settings`` and log what changed."""
    settings = settings if settings is not None else HotrodSettings()
    log = _global_telemetry()

    if settings.mysql_get_delay != args.fix_db_query_delay:
        log.info(
            "fix: overriding MySQL query delay",
            Field("old", settings.mysql_get_delay),
            Field("new", args.fix_db_query_delay),
        )
        settings.mysql_get_delay = args.fix_db_query_delay
    if args.fix_disable_db_conn_mutex:
        log.info("fix: disabling db connection mutex")
        settings.mysql_mutex_disabled = True
    if settings.route_worker_pool_size != args.fix_route_worker_pool_size:
        log.info(
            "fix: overriding route worker pool size",
            Field("old", settings.route_worker_pool_size),
            Field("new", args.fix_route_worker_pool_size),
        )
        settings.route_worker_pool_size = args.fix_route_worker_pool_size

    for name, port, default in (
        ("customer", args.customer_service_port, DEFAULT_CUSTOMER_PORT),
        ("driver", args.driver_service_port, DEFAULT_DRIVER_PORT),
        ("frontend", args.frontend_service_port, DEFAULT_FRONTEND_PORT),
        ("route", args.route_service_port, DEFAULT_ROUTE_PORT),
    ):
        if port != default:
            log.info(f"changing {name} service port", Field("old", default), Field("new", port))

    if args.basepath:
        log.info("changing basepath for frontend", Field("old", "/"), Field("new", args.basepath))
    return settings


def _host_port(port: int) -> str:
    return f"{LISTEN_HOST}:{port}"


def frontend_options(args: argparse.Namespace) -> ConfigOptions:
    """Service addresses and frontend exposure taken from the flags."""
    return ConfigOptions(
        frontend_host_port=_host_port(args.frontend_service_port),
        driver_host_port=_host_port(args.driver_service_port),
        customer_host_port=_host_port(args.customer_service_port),
        route_host_port=_host_port(args.route_service_port),
        basepath=args.basepath,
        jaeger_ui=args.jaeger_ui,
    )


class _DriverHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    service: DriverService


class _DriverHandler(BaseHTTPRequestHandler):
    server: _DriverHTTPServer

    def log_message(self, format: str, *args: Any) -> None:
        pass

    def do_GET(self) -> None:
        url = urllib.parse.urlsplit(self.path)
        if url.path != _DRIVER_PATH:
            handle_error(self, LookupError("404 page not found"), 404)
            return
        location = urllib.parse.parse_qs(url.query).get("location", [""])[0]
        try:
            drivers = self.server.service.find_nearest(location)
        except Exception as exc:
            handle_error(self, exc, 500)
            return
        payload = {
            "Locations": [{"DriverID": d.driver_id, "Location": d.location} for d in drivers]
        }
        data = json.dumps(payload).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class _DriverServer:
    """Network front of the driver service."""

    def __init__(self, address: str, service: DriverService) -> None:
        self._httpd = _DriverHTTPServer(_split_host_port(address), _DriverHandler)
        self._httpd.service = service
        host, port = self._httpd.server_address[:2]
        self.address = f"{host}:{port}"
        self._state = threading.Lock()
        self._serving = False
        self._closed = False

    def serve_forever(self) -> None:
        with self._state:
            if self._closed:
                return
            self._serving = True
        from_ctx().info("Starting", Field("address", self.address))
        self._httpd.serve_forever()

    def shutdown(self) -> None:
        with self._state:
            if self._closed:
                return
            self._closed = True
            serving = self._serving
        if serving:
            self._httpd.shutdown()
        self._httpd.server_close()


class _DriverClient:
    """Remote client of the driver service."""

    def __init__(self, host_port: str, timeout: float = 1.0) -> None:
        self.host_port = host_port
        self.timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def find_nearest(self, location: str) -> list[Driver]:
        from_ctx().info("Finding nearest drivers", Field("location", location))
        query = urllib.parse.urlencode({"location": location})
        url = f"http://{self.host_port}{_DRIVER_PATH}?{query}"
        try:
            with self._opener.open(url, timeout=self.timeout) as response:
                payload = json.loads(response.read())
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", "replace").strip()
            raise ValueError(f"driver service returned {exc.code}: {body}") from exc
        return [
            Driver(driver_id=str(item["DriverID"]), location=str(item["Location"]))
            for item in payload.get("Locations", [])
        ]


def _serve(name: str, factory: Callable[[], _Server]) -> None:
    config = default_debug_config()
    config.service = name
    telemetry = Telemetry(config)
    with wrap_context(telemetry):
        try:
            server = factory()
        except Exception as exc:
            telemetry.error("Error running command", Field("error", str(exc)))
            raise
        try:
            server.serve_forever()
        finally:
            server.shutdown()


def _run_customer(args: argparse.Namespace, settings: HotrodSettings) -> None:
    _serve(
        "customer",
        lambda: CustomerServer(_host_port(args.customer_service_port), CustomerDatabase(settings)),
    )


def _run_driver(args: argparse.Namespace, settings: HotrodSettings) -> None:
    _serve(
        "driver",
        lambda: _DriverServer(
            _host_port(args.driver_service_port), DriverService(Redis(settings))
        ),
    )


def _run_route(args: argparse.Namespace, settings: HotrodSettings) -> None:
    _serve("route", lambda: RouteServer(_host_port(args.route_service_port), settings))


def _run_frontend(args: argparse.Namespace, settings: HotrodSettings) -> None:
    options = frontend_options(args)
    with BestETA(
        CustomerClient(options.customer_host_port),
        _DriverClient(options.driver_host_port),
        RouteClient(options.route_host_port),
        settings.route_worker_pool_size,
    ) as best_eta:
        _serve("frontend", lambda: FrontendServer(options, best_eta))


def _run_in_background(runner, args: argparse.Namespace, settings: HotrodSettings) -> None:
    def target() -> None:
        try:
            runner(args, settings)
        except Exception:
            pass

    threading.Thread(target=target, daemon=True).start()


def _run_all(args: argparse.Namespace, settings: HotrodSettings) -> None:
    _global_telemetry().info("Starting all services")
    for runner in (_run_customer, _run_driver, _run_route):
        _run_in_background(runner, args, settings)
    _run_frontend(args, settings)


_COMMANDS = {
    "all": _run_all,
    "customer": _run_customer,
    "driver": _run_driver,
    "frontend": _run_frontend,
    "route": _run_route,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Run the selected service; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 0

    settings = apply_fixes(args, HotrodSettings())
    try:
        _COMMANDS[args.command](args, settings)
    except KeyboardInterrupt:
        return 0
    except Exception as exc:
        _global_telemetry().error("We bowled a googly", Field("error", str(exc)))
        return 1
    return 0