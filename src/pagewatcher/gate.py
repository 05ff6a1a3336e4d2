from __future__ import annotations

import logging
from typing import Any, Callable

from .interfaces import Persistence
from .settings_store import KEY_NOTIFICATION_LEDGER

LOGGER = logging.getLogger(__name__)


def _ledger(data: dict[str, Any]) -> dict[str, int]:
    raw = data.get(KEY_NOTIFICATION_LEDGER)
    if not isinstance(raw, dict):
        return {}
    return dict(raw)


class NotificationGate:
    """At most one alert per (target, run index), backed by the persisted ledger."""

    def __init__(self, store: Persistence) -> None:
        self._store = store

    def can_notify(self, target_id: str, run_index: int) -> bool:
        ledger = _ledger(self._store.get([KEY_NOTIFICATION_LEDGER]))
        return ledger.get(str(target_id)) != run_index

    def mark_notified(self, target_id: str, run_index: int) -> None:
        key = str(target_id)

        def mutate(current: dict[str, Any]) -> dict[str, Any]:
            ledger = _ledger(current)
            ledger[key] = run_index
            return {KEY_NOTIFICATION_LEDGER: ledger}

        self._store.update(mutate)

    def claim(
        self,
        target_id: str,
        run_index: int,
        *,
        still_active: Callable[[], bool] | None = None,
    ) -> bool:
        """Check and mark in one atomic step; True when this caller may alert.

        ``still_active`` is evaluated under the store lock, so a watch stopped
        concurrently never gets a ledger entry written after its removal.
        """
        key = str(target_id)
        granted = False

        def mutate(current: dict[str, Any]) -> dict[str, Any] | None:
            nonlocal granted
            if still_active is not None and not still_active():
                return None
            ledger = _ledger(current)
            if ledger.get(key) == run_index:
                return None
            ledger[key] = run_index
            granted = True
            return {KEY_NOTIFICATION_LEDGER: ledger}

        self._store.update(mutate)
        if not granted:
            LOGGER.info(
                "Alert suppressed for run %s",
                run_index,
                extra={"category": "notify"},
            )
        return granted

    def forget(self, target_id: str) -> None:
        key = str(target_id)

        def mutate(current: dict[str, Any]) -> dict[str, Any] | None:
            ledger = _ledger(current)
            if key not in ledger:
                return None
            ledger.pop(key)
            return {KEY_NOTIFICATION_LEDGER: ledger}

        self._store.update(mutate)
