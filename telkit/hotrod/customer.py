"""Customer service: a simulated SQL repository, its HTTP server and client."""

from __future__ import annotations

import json
import random
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from telkit.construct import Field
from telkit.context import from_ctx
from telkit.hotrod import delay
from telkit.hotrod.httperr import handle_error
from telkit.hotrod.session_mutex import SessionMutex
from telkit.hotrod.settings import HotrodSettings

SESSION_BAGGAGE_KEY = "request"


@dataclass(frozen=True)
class Customer:
    """Data about a customer."""

    id: str
    name: str
    location: str


class InvalidCustomerError(LookupError):
    """Raised when no customer has the requested ID."""

    def __init__(self, message: str = "invalid customer ID") -> None:
        super().__init__(message)


def _customer_to_json(customer: Customer) -> dict[str, str]:
    return {"ID": customer.id, "Name": customer.name, "Location": customer.location}


def _customer_from_json(data: Any) -> Customer:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    lowered = {str(k).lower(): v for k, v in data.items()}
    return Customer(
        id=str(lowered.get("id", "")),
        name=str(lowered.get("name", "")),
        location=str(lowered.get("location", "")),
    )


class CustomerDatabase:
    """Customer repository simulating a slow SQL database."""

    def __init__(
        self, settings: HotrodSettings | None = None, rng: random.Random | None = None
    ) -> None:
        self.settings = settings if settings is not None else HotrodSettings()
        self._rng = rng
        self._lock = SessionMutex()
        self.customers: dict[str, Customer] = {
            c.id: c
            for c in (
                Customer("123", "Rachel's Floral Designs", "115,277"),
                Customer("567", "Amazing Coffee Roasters", "211,653"),
                Customer("392", "Trom Chocolatier", "577,322"),
                Customer("731", "Japanese Desserts", "728,326"),
            )
        }

    def get(self, customer_id: str, session: str = "") -> Customer:
        """Load a customer, simulating query latency and a one-connection pool."""
        telemetry = from_ctx().copy()
        telemetry.info("Loading customer", Field("customer_id", customer_id))
        telemetry.put_fields(
            Field("sql.query", "SELECT * FROM customer WHERE customer_id=" + customer_id)
        )

        locked = not self.settings.mysql_mutex_disabled
        if locked:
            self._lock.lock(session)
        try:
            delay.sleep(
                self.settings.mysql_get_delay, self.settings.mysql_get_delay_std_dev, self._rng
            )
        finally:
            if locked:
                self._lock.unlock()

        try:
            return self.customers[customer_id]
        except KeyError:
            raise InvalidCustomerError() from None


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r}: missing port")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ValueError(f"address {address!r}: invalid port") from None


def _baggage_member(header: str, key: str) -> str:
    for item in header.split(","):
        name, sep, rest = item.partition("=")
        if sep and name.strip() == key:
            return urllib.parse.unquote(rest.split(";", 1)[0].strip())
    return ""


def _parse_form(handler: BaseHTTPRequestHandler, query: str) -> dict[str, list[str]]:
    form: dict[str, list[str]] = {}
    content_type = handler.headers.get("Content-Type", "")
    if handler.command in ("POST", "PUT", "PATCH") and content_type.startswith(
        "application/x-www-form-urlencoded"
    ):
        length = int(handler.headers.get("Content-Length") or 0)
        body = handler.rfile.read(length).decode("utf-8")
        for key, values in urllib.parse.parse_qs(body, keep_blank_values=True).items():
            form.setdefault(key, []).extend(values)
    for key, values in urllib.parse.parse_qs(query, keep_blank_values=True).items():
        form.setdefault(key, []).extend(values)
    return form


def _log_access(handler: BaseHTTPRequestHandler, format: str, *args: Any) -> None:
    from_ctx().debug(
        "http access",
        Field("client", handler.address_string()),
        Field("message", format % args),
    )


class _CustomerHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    database: CustomerDatabase


class _CustomerHandler(BaseHTTPRequestHandler):
    server: _CustomerHTTPServer

    def log_message(self, format: str, *args: Any) -> None:
        _log_access(self, format, *args)

    def do_GET(self) -> None:
        self._handle()

    def do_POST(self) -> None:
        self._handle()

    def _handle(self) -> None:
        url = urllib.parse.urlsplit(self.path)
        if url.path != "/customer":
            handle_error(self, LookupError("404 page not found"), 404)
            return

        telemetry = from_ctx()
        telemetry.info(
            "HTTP request received", Field("method", self.command), Field("url", self.path)
        )

        try:
            form = _parse_form(self, url.query)
        except ValueError as exc:
            handle_error(self, exc, 400)
            return

        customer_id = form.get("customer", [""])[0]
        if not customer_id:
            handle_error(self, ValueError("Missing required 'customer' parameter"), 400)
            return

        session = _baggage_member(self.headers.get("baggage", ""), SESSION_BAGGAGE_KEY)
        try:
            customer = self.server.database.get(customer_id, session)
        except InvalidCustomerError as exc:
            handle_error(self, exc, 500)
            return

        data = json.dumps(_customer_to_json(customer)).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class CustomerServer:
    """HTTP server answering ``/customer?customer=<id>``."""

    def __init__(self, address: str, database: CustomerDatabase) -> None:
        self.database = database
        self._httpd = _CustomerHTTPServer(_split_host_port(address), _CustomerHandler)
        self._httpd.database = database
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


class CustomerClient:
    """Remote client of the customer service."""

    def __init__(self, host_port: str, timeout: float = 10.0) -> None:
        self.host_port = host_port
        self.timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def get(self, customer_id: str) -> Customer:
        """Fetch a customer by ID."""
        from_ctx().info("Getting customer", Field("customer_id", customer_id))
        query = urllib.parse.urlencode({"customer": customer_id})
        url = f"http://{self.host_port}/customer?{query}"
        try:
            with self._opener.open(url, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", "replace").strip()
            raise ValueError(f"customer service returned {exc.code}: {body}") from exc
        return _customer_from_json(json.loads(payload))