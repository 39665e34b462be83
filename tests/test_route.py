import json
import random
import threading
import urllib.request
from datetime import timedelta

import pytest

from telkit.hotrod.route import (
    ROUTE_CALC_BY_CUSTOMER,
    ROUTE_CALC_BY_SESSION,
    CalcStats,
    Route,
    RouteClient,
    RouteRequestError,
    RouteServer,
    compute_route,
)
from telkit.hotrod.settings import HotrodSettings


@pytest.fixture
def fast_settings():
    zero = timedelta(0)
    return HotrodSettings(route_calc_delay=zero, route_calc_delay_std_dev=zero)


@pytest.fixture
def server(fast_settings):
    srv = RouteServer("127.0.0.1:0", fast_settings, random.Random(1), CalcStats())
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.shutdown()
    thread.join(5)


def test_compute_route_eta_is_whole_minutes_at_least_two(fast_settings):
    rng = random.Random(11)
    for _ in range(50):
        route = compute_route("1,2", "3,4", fast_settings, rng, CalcStats(), {})
        assert route.pickup == "1,2"
        assert route.dropoff == "3,4"
        assert route.eta >= timedelta(minutes=2)
        assert route.eta.total_seconds() % 60 == 0


def test_compute_route_records_stats_for_baggage(fast_settings):
    stats = CalcStats()
    compute_route("a", "b", fast_settings, random.Random(2), stats, {"customer": "Trom Chocolatier"})
    snapshot = stats.snapshot()
    assert list(snapshot[ROUTE_CALC_BY_CUSTOMER]) == ["customer"]
    assert snapshot[ROUTE_CALC_BY_SESSION] == {}


def test_calc_stats_accumulates_whole_milliseconds():
    stats = CalcStats()
    stats.update({"customer": "x"}, timedelta(milliseconds=1500))
    assert stats.snapshot()[ROUTE_CALC_BY_CUSTOMER] == {"customer": 1.5}
    stats.update({"customer": "x"}, timedelta(microseconds=999))
    assert stats.snapshot()[ROUTE_CALC_BY_CUSTOMER] == {"customer": 1.5}


def test_calc_stats_ignores_absent_members():
    stats = CalcStats()
    stats.update({"other": "value"}, timedelta(seconds=1))
    assert stats.snapshot() == {ROUTE_CALC_BY_CUSTOMER: {}, ROUTE_CALC_BY_SESSION: {}}


def test_route_json_round_trip():
    route = Route("115,277", "728,326", timedelta(minutes=7))
    assert Route.from_json(route.to_json()) == route
    assert set(route.to_json()) == {"Pickup", "Dropoff", "ETA"}


def test_route_from_json_rejects_bad_eta():
    with pytest.raises(ValueError):
        Route.from_json({"Pickup": "a", "Dropoff": "b", "ETA": "soon"})


def test_client_finds_route(server):
    route = RouteClient(server.address, timeout=5).find_route("1,2", "3,4")
    assert (route.pickup, route.dropoff) == ("1,2", "3,4")
    assert route.eta >= timedelta(minutes=2)


def test_missing_dropoff_is_reported(server):
    client = RouteClient(server.address, timeout=5)
    with pytest.raises(RouteRequestError) as info:
        client.get_json(f"http://{server.address}/route?pickup=1,2")
    assert "Missing required 'dropoff' parameter" in str(info.value)


def test_missing_pickup_is_reported(server):
    client = RouteClient(server.address, timeout=5)
    with pytest.raises(RouteRequestError) as info:
        client.get_json(f"http://{server.address}/route?dropoff=1,2")
    assert "Missing required 'pickup' parameter" in str(info.value)


def test_unknown_path_is_not_found(server):
    client = RouteClient(server.address, timeout=5)
    with pytest.raises(RouteRequestError) as info:
        client.get_json(f"http://{server.address}/nowhere")
    assert "404 page not found" in str(info.value)


def test_baggage_header_feeds_stats_and_debug_vars(server):
    request = urllib.request.Request(
        f"http://{server.address}/route?pickup=1,2&dropoff=3,4",
        headers={"baggage": "session=abc,customer=Trom"},
    )
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    with opener.open(request, timeout=5) as response:
        body = json.loads(response.read())
    assert body["Pickup"] == "1,2"

    snapshot = server.stats.snapshot()
    assert "session" in snapshot[ROUTE_CALC_BY_SESSION]
    assert "customer" in snapshot[ROUTE_CALC_BY_CUSTOMER]

    exported = RouteClient(server.address, timeout=5).get_json(
        f"http://{server.address}/debug/vars"
    )
    assert exported == server.stats.snapshot()