import random
import socket
import threading
from datetime import timedelta

import pytest

from telkit.hotrod.cli import (
    _DriverClient,
    _DriverServer,
    apply_fixes,
    build_parser,
    frontend_options,
    main,
)
from telkit.hotrod.driver import NEAREST_DRIVERS, DriverService, Redis
from telkit.hotrod.settings import HotrodSettings


def test_defaults():
    args = build_parser().parse_args([])
    assert args.command is None
    assert args.customer_service_port == 8081
    assert args.driver_service_port == 8082
    assert args.frontend_service_port == 8080
    assert args.route_service_port == 8083
    assert args.fix_db_query_delay == timedelta(milliseconds=300)
    assert args.fix_route_worker_pool_size == 3
    assert args.fix_disable_db_conn_mutex is False
    assert args.basepath == ""
    assert args.jaeger_ui == "http://localhost:16686"


def test_flags_after_subcommand_override_only_given_values():
    args = build_parser().parse_args(["route", "-r", "9000"])
    assert args.command == "route"
    assert args.route_service_port == 9000
    assert args.customer_service_port == 8081


def test_apply_fixes_overrides_settings():
    args = build_parser().parse_args(["-D", "1s", "-M", "-W", "5", "customer"])
    settings = apply_fixes(args, HotrodSettings())
    assert settings.mysql_get_delay == timedelta(seconds=1)
    assert settings.mysql_mutex_disabled is True
    assert settings.route_worker_pool_size == 5


def test_apply_fixes_with_defaults_changes_nothing():
    args = build_parser().parse_args(["customer"])
    assert apply_fixes(args, HotrodSettings()) == HotrodSettings()


def test_frontend_options_from_flags():
    args = build_parser().parse_args(["-f", "9090", "-b", "/ui", "frontend"])
    options = frontend_options(args)
    assert options.frontend_host_port == "0.0.0.0:9090"
    assert options.driver_host_port == "0.0.0.0:8082"
    assert options.customer_host_port == "0.0.0.0:8081"
    assert options.route_host_port == "0.0.0.0:8083"
    assert options.basepath == "/ui"
    assert options.jaeger_ui == "http://localhost:16686"


def test_invalid_duration_is_a_usage_error():
    with pytest.raises(SystemExit) as info:
        build_parser().parse_args(["-D", "soon", "customer"])
    assert info.value.code == 2


def test_unknown_command_is_a_usage_error():
    with pytest.raises(SystemExit) as info:
        main(["teleport"])
    assert info.value.code == 2


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "customer" in capsys.readouterr().out


def test_port_in_use_fails():
    with socket.socket() as holder:
        holder.bind(("0.0.0.0", 0))
        holder.listen()
        port = holder.getsockname()[1]
        assert main(["-r", str(port), "route"]) == 1


def test_driver_server_round_trip():
    settings = HotrodSettings(
        redis_find_delay=timedelta(0),
        redis_find_delay_std_dev=timedelta(0),
        redis_get_delay=timedelta(0),
        redis_get_delay_std_dev=timedelta(0),
    )
    server = _DriverServer("127.0.0.1:0", DriverService(Redis(settings, random.Random(3))))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        drivers = _DriverClient(server.address, timeout=5.0).find_nearest("115,277")
    finally:
        server.shutdown()
        thread.join(5)
    assert len(drivers) == NEAREST_DRIVERS
    for driver in drivers:
        assert driver.driver_id.startswith("T7") and driver.driver_id.endswith("C")
        x, y = driver.location.split(",")
        assert 0 <= int(x) < 1000 and 0 <= int(y) < 1000