import logging
from datetime import timedelta

import pytest

from telkit.config import (
    CaAppendError,
    Config,
    HistogramOpt,
    NoTLSError,
    OtelConfig,
    RawTLS,
    Sampler,
    apply_options,
    config_from_env,
    default_config,
    default_debug_config,
    parse_duration,
    parse_sampler,
    parse_sampler_fraction,
    with_health_checkers,
    with_histogram,
    with_monitor_enable,
    with_monitoring_addr,
    with_namespace,
    with_service_name,
    with_trace_sampler,
)

CA_PEM = "-----BEGIN CERTIFICATE-----\nplaceholder\n-----END CERTIFICATE-----\n"
CERT_PEM = "-----BEGIN CERTIFICATE-----\nplaceholder\n-----END CERTIFICATE-----\n"
KEY_PEM = "placeholder"


def test_get_config_from_env_defaults():
    config = config_from_env({})
    assert config.service == default_config().service
    assert config.namespace == "default"
    assert config.environment == "dev"
    assert config.otel.addr == "127.0.0.1:4317"
    assert config.monitor.monitor_addr == "0.0.0.0:8011"
    assert config.otel.traces.sampler == Sampler("statustraceidratio", 0.1)
    assert config.otel.metrics_periodic_interval_sec == 15


def test_telemetry_tls_from_env():
    environ = {
        "OTEL_COLLECTOR_TLS_CA_CERT": CA_PEM,
        "OTEL_COLLECTOR_TLS_CLIENT_CERT": CERT_PEM,
        "OTEL_COLLECTOR_TLS_CLIENT_KEY": KEY_PEM,
    }
    config = config_from_env(environ)
    assert config.otel.raw.ca == CA_PEM.encode()
    assert config.otel.raw.cert == CERT_PEM.encode()
    assert config.otel.raw.key == KEY_PEM.encode()
    assert config.otel.is_tls()


def test_default_config_service_is_normalised():
    service = default_config().service
    assert "-" not in service
    assert service == service.lower()
    assert default_config().otel.traces.sampler == Sampler("never")


def test_default_debug_config():
    config = default_debug_config()
    assert config.debug is True
    assert config.log_level == "debug"
    assert config.log_encode == "console"
    assert config.monitor.enable is False


def test_service_name_env_takes_precedence():
    assert config_from_env({"OTEL_SERVICE_NAME": "a", "PROJECT": "b"}).service == "a"
    assert config_from_env({"PROJECT": "b"}).service == "b"


@pytest.mark.parametrize(
    "encode,expected",
    [("console", "console"), ("none", "none"), ("xml", "json"), ("json", "json")],
)
def test_log_encode_normalised(encode, expected):
    assert config_from_env({"LOG_ENCODE": encode}).log_encode == expected


def test_server_name_disables_insecure():
    config = config_from_env({"OTEL_COLLECTOR_TLS_SERVER_NAME": "localhost"})
    assert config.otel.server_name == "localhost"
    assert config.otel.with_insecure is False


@pytest.mark.parametrize(
    "spec,expected",
    [
        ("never", Sampler("never")),
        ("always", Sampler("always")),
        ("traceidratio:0.5", Sampler("traceidratio", 0.5)),
        ("statustraceidratio:0.25", Sampler("statustraceidratio", 0.25)),
        ("traceidratio", Sampler("traceidratio", 0.0)),
    ],
)
def test_sampler_from_env(spec, expected):
    assert config_from_env({"TRACES_SAMPLER": spec}).otel.traces.sampler == expected


def test_unknown_sampler_keeps_default():
    config = config_from_env({"TRACES_SAMPLER": "bogus"})
    assert config.otel.traces.sampler == Sampler("never")
    assert parse_sampler("bogus") is None


@pytest.mark.parametrize(
    "text,expected",
    [("x:0.3", 0.3), ("x:abc", 0.0), ("a:b:c", 0.0), ("x", 0.0), ("x: 1", 0.0)],
)
def test_parse_sampler_fraction(text, expected):
    assert parse_sampler_fraction(text) == expected


@pytest.mark.parametrize(
    "text,expected",
    [
        ("10m", timedelta(minutes=10)),
        ("1s", timedelta(seconds=1)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("300ms", timedelta(milliseconds=300)),
        ("-1.5h", timedelta(hours=-1.5)),
        ("0", timedelta(0)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "10", "1x", "abc", "-"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_env_values_are_converted():
    config = config_from_env(
        {
            "LOGS_SYNC_INTERVAL": "5s",
            "LOGS_MAX_MESSAGE_SIZE": "512",
            "DEBUG": "true",
            "OTEL_ENABLE": "0",
            "METRICS_CARDINALITY_DETECTOR_MAX_CARDINALITY": "7",
        }
    )
    assert config.otel.logs.sync_interval == timedelta(seconds=5)
    assert config.otel.logs.max_message_size == 512
    assert config.debug is True
    assert config.otel.enable is False
    assert config.otel.metrics.cardinality_detector.max_cardinality == 7
    assert config.otel.traces.cardinality_detector.max_cardinality == 0


def test_invalid_env_values_are_ignored():
    config = config_from_env({"DEBUG": "maybe", "LOGS_MAX_MESSAGE_SIZE": "big"})
    assert config.debug is False
    assert config.otel.logs.max_message_size == 256


def test_cardinality_defaults():
    config = config_from_env({})
    assert config.otel.metrics.cardinality_detector.max_cardinality == 100
    assert config.otel.traces.cardinality_detector.max_instruments == 500
    assert config.otel.traces.cardinality_detector.diagnostic_interval == timedelta(minutes=10)


@pytest.mark.parametrize(
    "text,expected",
    [("debug", logging.DEBUG), ("WARN", logging.WARNING), ("", logging.INFO), ("error", logging.ERROR)],
)
def test_level(text, expected):
    assert Config(log_level=text).level() == expected


@pytest.mark.parametrize("text", ["Info", "verbose"])
def test_level_invalid(text):
    with pytest.raises(ValueError):
        Config(log_level=text).level()


def test_options():
    checker = object()
    hist = HistogramOpt("histogram_1", [100, 5_000, 100_000, 1_000_000])
    config = apply_options(
        default_config(),
        with_service_name("CONTROLLER"),
        with_namespace("TEST"),
        with_monitor_enable(False),
        with_monitoring_addr("127.0.0.1:9000"),
        with_health_checkers(checker),
        with_histogram(hist),
        with_trace_sampler(Sampler("always")),
    )
    assert config.service == "CONTROLLER"
    assert config.namespace == "TEST"
    assert config.monitor.enable is False
    assert config.monitor.monitor_addr == "127.0.0.1:9000"
    assert config.monitor.health_checkers == [checker]
    assert config.otel.bucket_views == [hist]
    assert config.otel.traces.sampler == Sampler("always")


def test_is_tls():
    assert OtelConfig().is_tls() is False
    assert OtelConfig(raw=RawTLS(cert=b"c")).is_tls() is False
    assert OtelConfig(raw=RawTLS(cert=b"c", key=b"k")).is_tls() is True
    assert OtelConfig(raw=RawTLS(ca=b"c")).is_tls() is True


def test_tls_context_without_tls():
    with pytest.raises(NoTLSError):
        OtelConfig().client_tls_context()


def test_tls_context_bad_ca():
    with pytest.raises(CaAppendError):
        OtelConfig(raw=RawTLS(ca=b"garbage")).client_tls_context()


def test_tls_context_bad_key_pair():
    with pytest.raises(ValueError, match="load key/pair"):
        OtelConfig(raw=RawTLS(cert=b"garbage", key=b"garbage")).client_tls_context()