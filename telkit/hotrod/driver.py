"""Driver service: a simulated Redis store and the nearest-driver search."""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass

from telkit.construct import Field
from telkit.context import from_ctx
from telkit.hotrod import delay
from telkit.hotrod.settings import HotrodSettings

# Every this many calls the simulated store times out.
ERROR_PERIOD = 5
# Number of driver IDs returned by a proximity search.
NEAREST_DRIVERS = 10


@dataclass(frozen=True)
class Driver:
    """A driver and the current car location."""

    driver_id: str
    location: str


class RedisTimeoutError(TimeoutError):
    """Raised when the simulated Redis store times out."""

    def __init__(self, message: str = "redis timeout") -> None:
        super().__init__(message)


class ErrorSimulator:
    """Makes every fifth call fail, starting with the first one."""

    def __init__(
        self, settings: HotrodSettings | None = None, rng: random.Random | None = None
    ) -> None:
        self.settings = settings if settings is not None else HotrodSettings()
        self._rng = rng
        self._lock = threading.Lock()
        self._count_till_error = 0

    def check_error(self) -> None:
        """Return normally, or sleep a little longer and raise RedisTimeoutError."""
        with self._lock:
            self._count_till_error -= 1
            if self._count_till_error > 0:
                return
            self._count_till_error = ERROR_PERIOD
        delay.sleep(2 * self.settings.redis_get_delay, 0.0, self._rng)
        raise RedisTimeoutError()


class Redis:
    """Simulator of a remote Redis cache of driver locations."""

    def __init__(
        self, settings: HotrodSettings | None = None, rng: random.Random | None = None
    ) -> None:
        self.settings = settings if settings is not None else HotrodSettings()
        self._rng = rng
        self._random = rng if rng is not None else random.Random()
        self._errors = ErrorSimulator(self.settings, rng)

    def find_driver_ids(self, location: str) -> list[str]:
        """IDs of drivers near ``location``."""
        telemetry = from_ctx().copy()
        telemetry.put_fields(Field("component", "redis"), Field("param.location", location))

        delay.sleep(self.settings.redis_find_delay, self.settings.redis_find_delay_std_dev, self._rng)

        drivers = [f"T7{self._random.randrange(100000):05d}C" for _ in range(NEAREST_DRIVERS)]
        telemetry.info("Found drivers", Field("drivers", drivers))
        return drivers

    def get_driver(self, driver_id: str) -> Driver:
        """The driver with ``driver_id`` and its current car location."""
        telemetry = from_ctx().copy()
        telemetry.put_fields(Field("component", "redis"), Field("param.driverID", driver_id))

        delay.sleep(self.settings.redis_get_delay, self.settings.redis_get_delay_std_dev, self._rng)
        try:
            self._errors.check_error()
        except RedisTimeoutError as exc:
            telemetry.error("redis timeout", Field("driver_id", driver_id), Field("error", str(exc)))
            raise

        location = f"{self._random.randrange(1000)},{self._random.randrange(1000)}"
        return Driver(driver_id=driver_id, location=location)


class DriverService:
    """Finds drivers near a location, retrying failed lookups."""

    def __init__(self, redis: Redis | None = None, attempts: int = 3) -> None:
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {attempts}")
        self.redis = redis if redis is not None else Redis()
        self.attempts = attempts

    def find_nearest(self, location: str) -> list[Driver]:
        """Drivers near ``location``; raises the last error if a lookup keeps failing."""
        telemetry = from_ctx()
        telemetry.info("Searching for nearby drivers", Field("location", location))

        drivers: list[Driver] = []
        for driver_id in self.redis.find_driver_ids(location):
            last_error: RedisTimeoutError | None = None
            for attempt in range(1, self.attempts + 1):
                try:
                    drivers.append(self.redis.get_driver(driver_id))
                    break
                except RedisTimeoutError as exc:
                    last_error = exc
                    telemetry.error(
                        "Retrying GetDriver after error",
                        Field("retry_no", attempt),
                        Field("error", str(exc)),
                    )
            else:
                telemetry.error(
                    f"Failed to get driver after {self.attempts} attempts",
                    Field("error", str(last_error)),
                )
                assert last_error is not None
                raise last_error

        telemetry.info("Search successful", Field("num_drivers", len(drivers)))
        return drivers