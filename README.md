# telkit

A small telemetry toolkit for services, using only the standard library:

- **Configuration from the environment** (`telkit.config`): one `Config`
  dataclass with defaults that environment variables override, covering
  service identity, log level and encoding, collector address and TLS
  material, trace sampler choice, metric interval, cardinality-detector
  limits and the health-monitor address.
- **Structured logging** (`telkit.construct`): a `Telemetry` object that
  wraps a `logging.Logger`, carries persistent `Field`s and logs at debug,
  info, warn and error levels in JSON or console form.
- **Context propagation** (`telkit.context`): bind a `Telemetry` to the
  current execution context (a `contextvars` variable) and fetch it further
  down the call chain.
- **A simulated ride-dispatch demo** (`telkit.hotrod`): customer, driver,
  route and frontend services that simulate latency, lock contention and
  intermittent failures, started by the `telkit-hotrod` command.
- **A load-generating demo** (`telkit.demo`): an HTTP server with `/hello`,
  `/crash` and `/error` endpoints, a client for it, and a controller that
  fires requests and emits bursts of logs.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Configuration

```python
from telkit.config import config_from_env, apply_options, with_service_name

cfg = config_from_env()            # defaults, overridden by os.environ
cfg = apply_options(cfg, with_service_name("billing"))
print(cfg.level(), cfg.otel.is_tls())
```

`config_from_env(environ)` also accepts any mapping instead of `os.environ`.
`default_config()` returns the defaults without reading the environment (the
service name is the host name, lower-cased, with `-` turned into `_`), and
`default_debug_config()` is the same with debug on, level `debug`, console
encoding and monitoring disabled.

Other options: `with_namespace`, `with_monitor_enable`,
`with_monitoring_addr`, `with_health_checkers`, `with_histogram` (takes
`HistogramOpt` values) and `with_trace_sampler` (takes a `Sampler`).
`Config.level()` maps `log_level` to a `logging` level and raises
`ValueError` for an unknown name.

Some of the variables read:

| Variable | Default | Meaning |
|---|---|---|
| `OTEL_SERVICE_NAME` (or `PROJECT`) | host name | service name |
| `NAMESPACE` | `default` | service namespace |
| `DEPLOY_ENVIRONMENT` | `dev` | deployment environment |
| `VERSION` | `dev` | service version |
| `LOG_LEVEL` | `info` | minimum log level |
| `LOG_ENCODE` | `json` | `console` or `none`; anything else becomes `json` |
| `OTEL_COLLECTOR_GRPC_ADDR` | `127.0.0.1:4317` | collector address |
| `OTEL_COLLECTOR_TLS_SERVER_NAME` | empty | server name; setting it turns `with_insecure` off |
| `OTEL_COLLECTOR_TLS_CA_CERT` | empty | PEM CA certificate |
| `OTEL_COLLECTOR_TLS_CLIENT_CERT` / `_KEY` | empty | PEM client certificate and key |
| `TRACES_SAMPLER` | `statustraceidratio:0.1` | `never`, `always`, `traceidratio:<f>` or `statustraceidratio:<f>` |
| `MONITOR_ENABLE` / `MONITOR_ADDR` | `true` / `0.0.0.0:8011` | health monitor settings |

Cardinality-detector settings are read from
`TRACES_CARDINALITY_DETECTOR_*` and `METRICS_CARDINALITY_DETECTOR_*`
(`ENABLE`, `MAX_CARDINALITY`, `MAX_INSTRUMENTS`, `DIAGNOSTIC_INTERVAL`).
Durations such as `LOGS_SYNC_INTERVAL=1s` use the `300ms` / `1h30m` notation
and are read with `parse_duration`. Values that do not parse are ignored and
the default stays. `parse_sampler` and `parse_sampler_fraction` turn a sampler
specification into a `Sampler`.

When TLS material is present, `OtelConfig.client_tls_context()` builds an
`ssl.SSLContext`; it raises `NoTLSError` when there is nothing to build from,
`CaAppendError` when the CA bundle cannot be loaded, and `ValueError` when the
client key pair is unusable.

## Logging and context

```python
from telkit.config import default_config
from telkit.construct import Telemetry, field, new_logger
from telkit.context import with_context, from_ctx

cfg = default_config()
tele = Telemetry(cfg, new_logger(cfg))
tele.put_fields(field("component", "worker"))

with with_context(tele):
    from_ctx().info("job started", field("job_id", 42))
```

`with_context` installs a copy of the telemetry (unless one with a different
logger is already current); `wrap_context` installs the object itself.
`from_ctx()` outside any bound context returns a copy of a fallback telemetry
and logs a "use null Telemetry" warning. `Telemetry.copy()` shares the logger
but keeps its own field list. `set_log_output(tele)` duplicates the log output,
at debug level, into an `io.StringIO` it returns. `create_resource(config)`
returns a dict of resource attributes, including a `service_instance_id` made
by `gen_instance_id`.

## The dispatch demo

```
telkit-hotrod all
```

starts the customer, driver and route services in background threads and the
frontend in the foreground. Each can be started on its own with
`telkit-hotrod customer`, `telkit-hotrod driver`, `telkit-hotrod route` or
`telkit-hotrod frontend`. Services speak plain HTTP with JSON bodies:

- customer: `/customer?customer=<id>` for the known customers `123`, `392`,
  `567`, `731`;
- driver: `/nearest?location=<x,y>`; every fifth lookup in the simulated store
  times out and is retried up to three times;
- route: `/route?pickup=..&dropoff=..`, and `/debug/vars` with the accumulated
  calculation times per `customer` and `session` baggage member;
- frontend: `<basepath>/dispatch?customer=<id>` returns the driver with the
  best ETA, `<basepath>/config` returns the trace UI address.

Flags, accepted before or after the command:

| Flag | Default | Meaning |
|---|---|---|
| `-D`, `--fix-db-query-delay` | `300ms` | average latency of the simulated database query |
| `-M`, `--fix-disable-db-conn-mutex` | off | remove the single-connection lock in the customer database |
| `-W`, `--fix-route-worker-pool-size` | `3` | workers querying the route service |
| `-c`, `--customer-service-port` | `8081` | customer service port |
| `-d`, `--driver-service-port` | `8082` | driver service port |
| `-f`, `--frontend-service-port` | `8080` | frontend port |
| `-r`, `--route-service-port` | `8083` | route service port |
| `-b`, `--basepath` | empty (`/`) | base path the frontend is served under |
| `-j`, `--jaeger-ui` | `http://localhost:16686` | trace UI address returned by `/config` |

The pieces are usable on their own as well: `CustomerDatabase`,
`CustomerServer`, `CustomerClient`, `Redis`, `DriverService`, `compute_route`,
`RouteServer`, `RouteClient`, `BestETA`, `FrontendServer`, plus the helpers
`Pool`, `SessionMutex`, `HotrodSettings`, `delay.sleep` and
`httperr.handle_error`.

## The load demo

`telkit.demo.httptest.DemoServer` answers `/hello` (calls an optional
downstream with the request's baggage), `/crash` (waits a second, answers 500)
and `/error` (a random 5xx, or 200). `DemoClient.get(path)` returns the status
and body. `telkit.demo.mgr.Service` picks a random endpoint per shot, then
emits 100 log messages and records request counts and latencies, available
from `Service.metrics()`. There is no command for this demo; build it in code.

## What it does not do

- Nothing is exported to a collector: configuration describes collector
  address, TLS, compression, retries, samplers and metric views, but no
  traces, metrics or logs are sent anywhere, and no spans are created.
  Logs go to standard error (or nowhere with `LOG_ENCODE=none`).
- No health-monitor server is started; `MonitorConfig` only holds its
  settings and checkers.
- The frontend serves no web page, only the `/dispatch` and `/config` JSON
  endpoints.