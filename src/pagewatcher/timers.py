from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable

LOGGER = logging.getLogger(__name__)


@dataclass
class _Recurring:
    name: str
    period_seconds: float
    callback: Callable[[], None]
    stop_event: Event = field(default_factory=Event)
    thread: Thread | None = None

    def run(self) -> None:
        while not self.stop_event.wait(self.period_seconds):
            try:
                self.callback()
            except Exception as exc:
                LOGGER.exception(
                    "Timer %s callback failed: %s",
                    self.name,
                    exc,
                    extra={"category": "scheduler"},
                )


class RecurringTimers:
    """Named recurring timers; one thread per name, first fire after one period.

    Creating a timer under an existing name replaces it in one step, so a
    name never has two live schedules.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._timers: dict[str, _Recurring] = {}

    def create_recurring(
        self, name: str, period_seconds: float, callback: Callable[[], None]
    ) -> None:
        if period_seconds <= 0:
            raise ValueError("period_seconds must be > 0")
        timer = _Recurring(name=name, period_seconds=float(period_seconds), callback=callback)
        timer.thread = Thread(target=timer.run, name=f"timer-{name}", daemon=True)
        with self._lock:
            previous = self._timers.pop(name, None)
            if previous is not None:
                previous.stop_event.set()
            self._timers[name] = timer
            timer.thread.start()
        LOGGER.info(
            "Recurring timer %s set to %ss",
            name,
            period_seconds,
            extra={"category": "scheduler"},
        )

    def cancel(self, name: str) -> bool:
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.stop_event.set()
        LOGGER.info("Recurring timer %s cancelled", name, extra={"category": "scheduler"})
        return True

    def period(self, name: str) -> float | None:
        with self._lock:
            timer = self._timers.get(name)
            return timer.period_seconds if timer is not None else None

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    def cancel_all(self) -> None:
        for name in self.names():
            self.cancel(name)
