"""Tunable latencies and sizes of the simulated services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

_MYSQL_GET_DELAY = timedelta(milliseconds=300)
_REDIS_FIND_DELAY = timedelta(milliseconds=20)
_REDIS_GET_DELAY = timedelta(milliseconds=10)
_ROUTE_CALC_DELAY = timedelta(milliseconds=50)


@dataclass
class HotrodSettings:
    """Simulation knobs; some may be overridden from the command line."""

    # frontend: size of the worker pool used to query the route service
    route_worker_pool_size: int = 3

    # customer: how long retrieving a customer record takes
    mysql_get_delay: timedelta = _MYSQL_GET_DELAY
    mysql_get_delay_std_dev: timedelta = _MYSQL_GET_DELAY / 10
    # when False a mutex simulates a connection pool of size one
    mysql_mutex_disabled: bool = False

    # driver: finding closest drivers and retrieving a driver record
    redis_find_delay: timedelta = _REDIS_FIND_DELAY
    redis_find_delay_std_dev: timedelta = _REDIS_FIND_DELAY / 4
    redis_get_delay: timedelta = _REDIS_GET_DELAY
    redis_get_delay_std_dev: timedelta = _REDIS_GET_DELAY / 4

    # route: how long a route calculation takes
    route_calc_delay: timedelta = _ROUTE_CALC_DELAY
    route_calc_delay_std_dev: timedelta = _ROUTE_CALC_DELAY / 4