"""Telemetry configuration: defaults, environment loading and options."""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import socket
import ssl
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

ENV_BACK_PORT_PROJECT = "PROJECT"
ENV_SERVICE_NAME = "OTEL_SERVICE_NAME"

DISABLE_LOG = "none"

NEVER_SAMPLER = "never"
ALWAYS_SAMPLER = "always"
TRACE_ID_RATIO_SAMPLER = "traceidratio"
STATUS_TRACE_ID_RATIO_SAMPLER = "statustraceidratio"

Option = Callable[["Config"], None]


class NoTLSError(Exception):
    """Raised when TLS credentials are requested but none are configured."""

    def __init__(self, message: str = "no tls configuration") -> None:
        super().__init__(message)


class CaAppendError(Exception):
    """Raised when the CA bundle holds no usable certificate."""

    def __init__(self, message: str = "append certs from pem") -> None:
        super().__init__(message)


@dataclass
class HistogramOpt:
    """Histogram bucket configuration for one metric."""

    metric_name: str
    bucket: list[float] = field(default_factory=list)


@dataclass(frozen=True)
class Sampler:
    """A trace sampling strategy: its kind and, for ratio samplers, the fraction."""

    kind: str
    fraction: float = 0.0


def _env(name: str) -> dict[str, str]:
    return {"env": name}


@dataclass
class CardinalityDetectorConfig:
    enable: bool = field(default=True, metadata=_env("CARDINALITY_DETECTOR_ENABLE"))
    max_cardinality: int = field(default=0, metadata=_env("CARDINALITY_DETECTOR_MAX_CARDINALITY"))
    max_instruments: int = field(default=500, metadata=_env("CARDINALITY_DETECTOR_MAX_INSTRUMENTS"))
    diagnostic_interval: timedelta = field(
        default=timedelta(minutes=10), metadata=_env("CARDINALITY_DETECTOR_DIAGNOSTIC_INTERVAL")
    )


@dataclass
class LogsConfig:
    otel_client: bool = field(default=False, metadata=_env("LOGGING_OTEL_CLIENT"))
    otel_processor: bool = field(default=False, metadata=_env("LOGGING_OTEL_PROCESSOR"))
    enable_retry: bool = field(default=False, metadata=_env("LOGS_ENABLE_RETRY"))
    sync_interval: timedelta = field(default=timedelta(seconds=1), metadata=_env("LOGS_SYNC_INTERVAL"))
    max_message_size: int = field(default=256, metadata=_env("LOGS_MAX_MESSAGE_SIZE"))
    max_messages_per_second: int = field(default=100, metadata=_env("LOGS_MAX_MESSAGES_PER_SECOND"))
    max_level_messages_per_second: str = field(
        default="", metadata=_env("LOGS_MAX_LEVEL_MESSAGES_PER_SECOND")
    )


@dataclass
class TracesConfig:
    enable_retry: bool = field(default=False, metadata=_env("TRACES_ENABLE_RETRY"))
    sampler_spec: str = field(
        default=STATUS_TRACE_ID_RATIO_SAMPLER + ":0.1", metadata=_env("TRACES_SAMPLER")
    )
    enable_span_track_log_message: bool = field(
        default=False, metadata=_env("TRACES_ENABLE_SPAN_TRACK_LOG_MESSAGE")
    )
    enable_span_track_log_fields: bool = field(
        default=True, metadata=_env("TRACES_ENABLE_SPAN_TRACK_LOG_FIELDS")
    )
    cardinality_detector: CardinalityDetectorConfig = field(
        default_factory=CardinalityDetectorConfig, metadata={"prefix": "TRACES_"}
    )
    sampler: Sampler = field(default_factory=lambda: Sampler(NEVER_SAMPLER))


@dataclass
class MetricsConfig:
    enable_retry: bool = field(default=False, metadata=_env("METRICS_ENABLE_RETRY"))
    cardinality_detector: CardinalityDetectorConfig = field(
        default_factory=lambda: CardinalityDetectorConfig(max_cardinality=100),
        metadata={"prefix": "METRICS_"},
    )


@dataclass
class RawTLS:
    """PEM encoded CA bundle and client key pair."""

    ca: bytes = field(default=b"", metadata=_env("OTEL_COLLECTOR_TLS_CA_CERT"))
    cert: bytes = field(default=b"", metadata=_env("OTEL_COLLECTOR_TLS_CLIENT_CERT"))
    key: bytes = field(default=b"", metadata=_env("OTEL_COLLECTOR_TLS_CLIENT_KEY"))


@dataclass
class OtelConfig:
    enable: bool = field(default=True, metadata=_env("OTEL_ENABLE"))
    addr: str = field(default="127.0.0.1:4317", metadata=_env("OTEL_COLLECTOR_GRPC_ADDR"))
    with_insecure: bool = field(default=True, metadata=_env("OTEL_EXPORTER_WITH_INSECURE"))
    with_compression: bool = field(default=True, metadata=_env("OTEL_ENABLE_COMPRESSION"))
    metrics_periodic_interval_sec: int = field(
        default=15, metadata=_env("OTEL_METRIC_PERIODIC_INTERVAL_SEC")
    )
    server_name: str = field(default="", metadata=_env("OTEL_COLLECTOR_TLS_SERVER_NAME"))
    logs: LogsConfig = field(default_factory=LogsConfig)
    traces: TracesConfig = field(default_factory=TracesConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    raw: RawTLS = field(default_factory=RawTLS)
    bucket_views: list[HistogramOpt] = field(default_factory=list)

    def is_tls(self) -> bool:
        """True when a client key pair or a CA bundle is configured."""
        return bool((self.raw.cert and self.raw.key) or self.raw.ca)

    def client_tls_context(self) -> ssl.SSLContext:
        """Build a client TLS context for the collector connection."""
        if not self.is_tls():
            raise NoTLSError()

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)

        if self.raw.cert and self.raw.key:
            with tempfile.TemporaryDirectory() as tmp:
                cert_path = Path(tmp) / "client.crt"
                key_path = Path(tmp) / "client.key"
                cert_path.write_bytes(self.raw.cert)
                key_path.write_bytes(self.raw.key)
                try:
                    context.load_cert_chain(str(cert_path), str(key_path))
                except (ssl.SSLError, ValueError) as exc:
                    raise ValueError(f"load key/pair: {exc}") from exc

        if self.raw.ca:
            try:
                context.load_verify_locations(cadata=self.raw.ca.decode("utf-8", "replace"))
            except (ssl.SSLError, ValueError) as exc:
                raise CaAppendError() from exc
        else:
            context.load_default_certs(ssl.Purpose.SERVER_AUTH)

        return context


@dataclass
class MonitorConfig:
    enable: bool = field(default=True, metadata=_env("MONITOR_ENABLE"))
    monitor_addr: str = field(default="0.0.0.0:8011", metadata=_env("MONITOR_ADDR"))
    health_checkers: list[Any] = field(default_factory=list)


_LEVELS = {
    "": logging.INFO,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": 45,
    "panic": 48,
    "fatal": logging.CRITICAL,
}


@dataclass
class Config:
    service: str = field(default="", metadata=_env(ENV_SERVICE_NAME))
    namespace: str = field(default="default", metadata=_env("NAMESPACE"))
    environment: str = field(default="dev", metadata=_env("DEPLOY_ENVIRONMENT"))
    version: str = field(default="dev", metadata=_env("VERSION"))
    log_level: str = field(default="info", metadata=_env("LOG_LEVEL"))
    # "json", "console" or "none"
    log_encode: str = field(default="json", metadata=_env("LOG_ENCODE"))
    debug: bool = field(default=False, metadata=_env("DEBUG"))
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    otel: OtelConfig = field(default_factory=OtelConfig)

    def level(self) -> int:
        """The logging level named by ``log_level``."""
        text = self.log_level
        if text not in (text.lower(), text.upper()) or text.lower() not in _LEVELS:
            raise ValueError(f'zap set log lever "{text}": unrecognized level')
        return _LEVELS[text.lower()]


_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"300ms"``, ``"10m"`` or ``"1h30m"``."""
    s = text
    negative = False
    if s[:1] in ("+", "-") and s:
        negative = s[0] == "-"
        s = s[1:]
    if s == "0":
        return timedelta(0)
    if not s:
        raise ValueError(f'time: invalid duration "{text}"')

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART.match(s, pos)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=-total if negative else total)


def parse_sampler_fraction(text: str) -> float:
    """Fraction after the colon in ``kind:fraction``; 0 when absent or invalid."""
    parts = text.split(":")
    if len(parts) != 2:
        return 0.0
    value = parts[1]
    if value != value.strip() or "_" in value:
        return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_sampler(text: str) -> Sampler | None:
    """Turn a sampler specification into a Sampler, or None if unknown."""
    if text == NEVER_SAMPLER:
        return Sampler(NEVER_SAMPLER)
    if text == ALWAYS_SAMPLER:
        return Sampler(ALWAYS_SAMPLER)
    if text.startswith(TRACE_ID_RATIO_SAMPLER):
        return Sampler(TRACE_ID_RATIO_SAMPLER, parse_sampler_fraction(text))
    if text.startswith(STATUS_TRACE_ID_RATIO_SAMPLER):
        return Sampler(STATUS_TRACE_ID_RATIO_SAMPLER, parse_sampler_fraction(text))
    return None


def _hostname_service() -> str:
    return socket.gethostname().replace("-", "_").lower()


def default_config() -> Config:
    """Configuration with built-in defaults and the host name as service."""
    return Config(service=_hostname_service())


def default_debug_config() -> Config:
    """Defaults tuned for local debugging."""
    config = default_config()
    config.debug = True
    config.log_level = "debug"
    config.log_encode = "console"
    config.monitor.enable = False
    return config


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}
_INT = re.compile(r"[+-]?\d+")


def _convert(current: Any, raw: str) -> Any:
    if isinstance(current, bool):
        if raw in _TRUE:
            return True
        if raw in _FALSE:
            return False
        raise ValueError(f"invalid bool {raw!r}")
    if isinstance(current, int):
        if not _INT.fullmatch(raw):
            raise ValueError(f"invalid int {raw!r}")
        return int(raw)
    if isinstance(current, bytes):
        return raw.encode("utf-8")
    if isinstance(current, timedelta):
        return parse_duration(raw)
    return raw


def _load_env(target: Any, environ: Mapping[str, str], prefix: str = "") -> None:
    for spec in dataclasses.fields(target):
        current = getattr(target, spec.name)
        name = spec.metadata.get("env")
        if name is not None:
            raw = environ.get(prefix + name)
            if raw is None or raw == "":
                continue
            try:
                setattr(target, spec.name, _convert(current, raw))
            except ValueError:
                continue
        elif dataclasses.is_dataclass(current) and not isinstance(current, Sampler):
            _load_env(current, environ, prefix + spec.metadata.get("prefix", ""))


def config_from_env(environ: Mapping[str, str] | None = None) -> Config:
    """Start from default_config and overwrite what the environment sets."""
    if environ is None:
        environ = os.environ
    config = default_config()
    _load_env(config, environ)

    if ENV_SERVICE_NAME in environ:
        config.service = environ[ENV_SERVICE_NAME]
    elif ENV_BACK_PORT_PROJECT in environ:
        config.service = environ[ENV_BACK_PORT_PROJECT]

    if config.log_encode not in ("console", DISABLE_LOG):
        config.log_encode = "json"

    if config.otel.server_name:
        config.otel.with_insecure = False

    sampler = parse_sampler(config.otel.traces.sampler_spec)
    if sampler is not None:
        config.otel.traces.sampler = sampler

    return config


def with_health_checkers(*args: Any) -> Option:
    """Add health checkers to the monitoring system."""

    def apply(config: Config) -> None:
        config.monitor.health_checkers.extend(args)

    return apply


def with_service_name(name: str) -> Option:
    def apply(config: Config) -> None:
        config.service = name

    return apply


def with_namespace(namespace: str) -> Option:
    def apply(config: Config) -> None:
        config.namespace = namespace

    return apply


def with_monitor_enable(enable: bool) -> Option:
    def apply(config: Config) -> None:
        config.monitor.enable = enable

    return apply


def with_monitoring_addr(addr: str) -> Option:
    def apply(config: Config) -> None:
        config.monitor.monitor_addr = addr

    return apply


def with_histogram(*args: HistogramOpt) -> Option:
    """Register metrics with custom histogram buckets."""

    def apply(config: Config) -> None:
        config.otel.bucket_views.extend(args)

    return apply


def with_trace_sampler(sampler: Sampler) -> Option:
    def apply(config: Config) -> None:
        config.otel.traces.sampler = sampler

    return apply


def apply_options(config: Config, *args: Option) -> Config:
    """Apply options in order and return the same config."""
    for option in args:
        option(config)
    return config