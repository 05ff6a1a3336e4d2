from __future__ import annotations

import logging
from enum import Enum
from threading import RLock

from .interfaces import Notifier
from .status import StatusStore

LOGGER = logging.getLogger(__name__)


class IndicatorState(str, Enum):
    OFF = "OFF"
    ON = "ON"
    HIT = "HIT"


class StateIndicator:
    """OFF / ON / HIT state per target.

    OFF is left only through :meth:`activate`. HIT is entered from ON only,
    and falls back to ON only through an explicit :meth:`reassert`; there is
    no timed reset.
    """

    def __init__(self, notifier: Notifier, status: StatusStore | None = None) -> None:
        self._notifier = notifier
        self._status = status
        self._lock = RLock()
        self._states: dict[str, IndicatorState] = {}

    def state(self, target_id: str) -> IndicatorState:
        with self._lock:
            return self._states.get(str(target_id), IndicatorState.OFF)

    def activate(self, target_id: str) -> bool:
        return self._transition(target_id, IndicatorState.ON, allowed=set(IndicatorState))

    def reassert(self, target_id: str) -> bool:
        return self._transition(
            target_id,
            IndicatorState.ON,
            allowed={IndicatorState.ON, IndicatorState.HIT},
        )

    def hit(self, target_id: str) -> bool:
        return self._transition(
            target_id,
            IndicatorState.HIT,
            allowed={IndicatorState.ON, IndicatorState.HIT},
        )

    def deactivate(self, target_id: str) -> bool:
        return self._transition(target_id, IndicatorState.OFF, allowed=set(IndicatorState))

    def repaint(self, target_id: str) -> bool:
        """Push the current ON or HIT state again after the host redrew its UI."""
        with self._lock:
            current = self.state(target_id)
            if current is IndicatorState.OFF:
                return False
            return self._transition(target_id, current, allowed={current})

    def _transition(
        self,
        target_id: str,
        new_state: IndicatorState,
        *,
        allowed: set[IndicatorState],
    ) -> bool:
        key = str(target_id)
        with self._lock:
            current = self._states.get(key, IndicatorState.OFF)
            if current not in allowed:
                LOGGER.debug(
                    "Indicator transition %s -> %s ignored",
                    current.value,
                    new_state.value,
                    extra={"category": "indicator"},
                )
                return False
            self._states[key] = new_state
            if self._status is not None:
                self._status.set_indicator(new_state.value)
            try:
                self._notifier.set_indicator(key, new_state)
            except Exception as exc:
                LOGGER.warning(
                    "Indicator update failed: %s",
                    exc,
                    extra={"category": "indicator"},
                )
        return True
