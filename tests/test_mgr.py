import random
import threading

import pytest

from telkit.config import default_config
from telkit.construct import Telemetry
from telkit.demo.mgr import (
    MESSAGES_PER_SHOT,
    SERVER_COUNTER,
    SERVER_LATENCY,
    Service,
    choose_path,
    make_error,
    stack_trace,
)


def quiet_telemetry():
    config = default_config()
    config.log_encode = "none"
    return Telemetry(config)


class FixedRng:
    def __init__(self, value):
        self.value = value

    def randrange(self, stop):
        return self.value % stop


class RecordingClient:
    def __init__(self, stop_event=None, error=None):
        self.paths = []
        self.stop_event = stop_event
        self.error = error

    def get(self, path):
        self.paths.append(path)
        if self.stop_event is not None:
            self.stop_event.set()
        if self.error is not None:
            raise self.error


@pytest.mark.parametrize(
    "value, path",
    [(0, "/crash"), (1, "/error"), (3, "/error"), (4, "/hello"), (9, "/hello")],
)
def test_choose_path(value, path):
    assert choose_path(FixedRng(value)) == path


def test_one_shot_records_metrics():
    client = RecordingClient()
    service = Service(client, quiet_telemetry(), random.Random(3))
    path = service.one_shot()
    metrics = service.metrics()
    assert client.paths == [path]
    assert metrics[SERVER_COUNTER] == MESSAGES_PER_SHOT
    assert len(metrics[SERVER_LATENCY]) == MESSAGES_PER_SHOT
    assert all(value >= 0 for value in metrics[SERVER_LATENCY])


def test_one_shot_path_follows_rng():
    service = Service(RecordingClient(), quiet_telemetry(), random.Random(7))
    assert service.one_shot() == choose_path(random.Random(7))


def test_two_shots_accumulate():
    service = Service(RecordingClient(), quiet_telemetry(), random.Random(1))
    service.one_shot()
    service.one_shot()
    assert service.metrics()[SERVER_COUNTER] == 2 * MESSAGES_PER_SHOT


def test_client_error_propagates():
    service = Service(RecordingClient(error=ConnectionError("down")), quiet_telemetry())
    with pytest.raises(ConnectionError):
        service.one_shot()
    assert service.metrics()[SERVER_COUNTER] == 0


def test_metrics_returns_copy():
    service = Service(RecordingClient(), quiet_telemetry(), random.Random(2))
    service.one_shot()
    service.metrics()[SERVER_LATENCY].clear()
    assert len(service.metrics()[SERVER_LATENCY]) == MESSAGES_PER_SHOT


def test_run_returns_when_already_stopped():
    client = RecordingClient()
    stop = threading.Event()
    stop.set()
    Service(client, quiet_telemetry()).run(stop, interval=0.001)
    assert client.paths == []


def test_run_stops_after_event():
    stop = threading.Event()
    client = RecordingClient(stop_event=stop)
    service = Service(client, quiet_telemetry(), random.Random(5))
    service.run(stop, interval=0.001)
    assert len(client.paths) == 1
    assert service.metrics()[SERVER_COUNTER] == MESSAGES_PER_SHOT


def test_make_error():
    err = make_error()
    assert isinstance(err, LookupError)
    assert "no rows" in str(err)
    assert err.__traceback__ is not None


def test_stack_trace_names_caller():
    assert "test_stack_trace_names_caller" in stack_trace()