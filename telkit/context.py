"""Carry a Telemetry through the current execution context."""

from __future__ import annotations

import contextvars
import functools
from collections.abc import Iterator
from contextlib import contextmanager

from telkit.config import default_config
from telkit.construct import Field, Telemetry

_current: contextvars.ContextVar[Telemetry | None] = contextvars.ContextVar(
    "telkit_telemetry", default=None
)

_NULL_WARNING = "use null Telemetry"


@functools.lru_cache(maxsize=None)
def _global_telemetry() -> Telemetry:
    return Telemetry(default_config())


@contextmanager
def wrap_context(telemetry: Telemetry) -> Iterator[Telemetry]:
    """Make ``telemetry`` the current one for the duration of the block."""
    token = _current.set(telemetry)
    try:
        yield telemetry
    finally:
        _current.reset(token)


@contextmanager
def with_context(telemetry: Telemetry) -> Iterator[Telemetry]:
    """Install a copy of ``telemetry`` unless one with another logger is current."""
    current = _current.get()
    if current is not None and current.logger is not telemetry.logger:
        yield current
        return
    with wrap_context(telemetry.copy()) as installed:
        yield installed


def from_ctx() -> Telemetry:
    """The current telemetry, or a warned copy of the global one."""
    current = _current.get()
    if current is not None:
        return current

    fallback = _global_telemetry().copy()
    fallback.warn(_NULL_WARNING)
    fallback.put_fields(Field("warn", _NULL_WARNING))
    return fallback