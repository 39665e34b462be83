"""Demo controller: fires requests at the HTTP server and emits telemetry."""

from __future__ import annotations

import random
import threading
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Protocol

from telkit.construct import Field, Telemetry
from telkit.context import from_ctx

SERVER_LATENCY = "demo_client.request_latency"
SERVER_COUNTER = "demo_client.request_counts"

# Log messages and metric samples emitted after each request.
MESSAGES_PER_SHOT = 100

COMMON_LABELS: dict[str, Any] = {
    "userID": "00000000-0000-0000-0000-000000000001",
    "orderID": 1,
}

_EMIT_WORKERS = 16

_SQL_INSERT = """INSERT INTO table(A,B,C) VALUES
					(1,2,3) RETURNING ID"""


class HTTPGetter(Protocol):
    def get(self, path: str) -> Any: ...


def stack_trace() -> str:
    """The current call stack as text."""
    return "".join(traceback.format_stack())


def make_error() -> LookupError:
    """A no-rows error carrying the traceback of where it was made."""
    try:
        raise LookupError("sql: no rows in result set")
    except LookupError as exc:
        return exc


def choose_path(rng: random.Random) -> str:
    """Pick an endpoint: 30% error, 10% crash, 60% hello."""
    n = rng.randrange(10)
    if n in (1, 2, 3):
        return "/error"
    if n == 0:
        return "/crash"
    return "/hello"


class Service:
    """Repeatedly requests random endpoints and records metrics and logs."""

    def __init__(
        self,
        client: HTTPGetter,
        telemetry: Telemetry | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.client = client
        self.telemetry = telemetry if telemetry is not None else from_ctx()
        self.common_labels = dict(COMMON_LABELS)
        self._rng = rng if rng is not None else random.Random()
        self._lock = threading.Lock()
        self._request_count = 0
        self._request_latency: list[float] = []

    def one_shot(self) -> str:
        """Issue one request, then emit a burst of metrics and logs; returns the path."""
        start = time.monotonic()
        path = choose_path(self._rng)
        self.client.get(path)

        choices = [self._rng.randrange(5) for _ in range(MESSAGES_PER_SHOT)]
        with ThreadPoolExecutor(max_workers=_EMIT_WORKERS) as executor:
            list(executor.map(lambda choice: self._emit(start, choice), choices))
        return path

    def _emit(self, start: float, choice: int) -> None:
        elapsed_us = float(int((time.monotonic() - start) * 1_000_000))
        with self._lock:
            self._request_count += 1
            self._request_latency.append(elapsed_us)

        fields = [
            Field("field A", "a"),
            Field("field B", 100400),
            Field("fieldC", True),
            Field("Strings Array", ["StrA", "StrB"]),
            Field("sql", _SQL_INSERT),
        ]
        telemetry = self.telemetry
        if choice == 0:
            telemetry.info("test info message", *fields)
        elif choice == 1:
            telemetry.warn("test info message", *fields)
        elif choice == 2:
            telemetry.debug("test info message", *fields)
        elif choice == 3:
            telemetry.error("show errorVerbose", *fields, Field("error", str(make_error())))
        else:
            telemetry.error("show stack", *fields, Field("additional", stack_trace()))

    def run(self, stop_event: threading.Event, interval: float = 1.0) -> None:
        """Wait ``interval``, then shoot once per ``interval`` until stopped."""
        telemetry = self.telemetry.copy()
        if stop_event.wait(interval):
            return
        telemetry.info("run")
        while not stop_event.is_set():
            self.one_shot()
            if stop_event.wait(interval):
                return

    def metrics(self) -> dict[str, Any]:
        """Request count and recorded latencies (microseconds) so far."""
        with self._lock:
            return {
                SERVER_COUNTER: self._request_count,
                SERVER_LATENCY: list(self._request_latency),
            }