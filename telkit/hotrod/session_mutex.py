"""A mutex that reports who it keeps waiting."""

from __future__ import annotations

import threading

from telkit.construct import Field, Telemetry
from telkit.context import from_ctx


def _format_list(items: list[str]) -> str:
    return "[" + " ".join(items) + "]"


class SessionMutex:
    """An exclusive lock that logs queueing information per session."""

    def __init__(self, logger: Telemetry | None = None) -> None:
        self._logger = logger
        self._real_lock = threading.Lock()
        self._holder = ""
        self._waiters: list[str] = []
        self._waiters_lock = threading.Lock()

    def _telemetry(self) -> Telemetry:
        return self._logger if self._logger is not None else from_ctx()

    def lock(self, session: str = "") -> None:
        """Acquire the lock on behalf of ``session``."""
        telemetry = self._telemetry()

        with self._waiters_lock:
            waiting = len(self._waiters)
            if waiting > 0 and session:
                telemetry.info(
                    "waiting",
                    Field("session", session),
                    Field("event", f"Waiting for lock behind {waiting} transactions"),
                    Field("blockers", _format_list(self._waiters)),
                )
            self._waiters.append(session)

        self._real_lock.acquire()
        self._holder = session

        with self._waiters_lock:
            behind = len(self._waiters) - 1

        if session:
            telemetry.info(
                "event",
                Field("event", f"Acquired lock with {behind} transactions waiting behind"),
            )

    def unlock(self) -> None:
        """Release the lock."""
        if not self._real_lock.locked():
            raise RuntimeError("unlock of unlocked mutex")
        with self._waiters_lock:
            if self._holder in self._waiters:
                self._waiters.remove(self._holder)
        self._real_lock.release()

    def waiters(self) -> list[str]:
        """Sessions holding or queued for the lock, in arrival order."""
        with self._waiters_lock:
            return list(self._waiters)