from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Iterable
from uuid import uuid4

from .io_utils import atomic_write_text, read_json_safe

LOGGER = logging.getLogger(__name__)

KEY_KEYWORDS = "keywords"
KEY_INTERVAL_SECONDS = "intervalSeconds"
KEY_SOUND_ENABLED = "soundEnabled"
KEY_DESKTOP_NOTIFY = "desktopNotify"
KEY_KEEP_AWAKE = "keepAwake"
KEY_CONTAINER_LOCATOR = "containerLocator"
KEY_BASE_SCOPE = "baseScope"
KEY_ACTIVE_TARGET_ID = "activeTargetId"
KEY_RUN_COUNT = "runCount"
KEY_NOTIFICATION_LEDGER = "notificationLedger"

DEFAULT_SETTINGS: dict[str, Any] = {
    KEY_KEYWORDS: ["1 - Critical", "2 - High"],
    KEY_INTERVAL_SECONDS: 60,
    KEY_SOUND_ENABLED: True,
    KEY_DESKTOP_NOTIFY: True,
    KEY_KEEP_AWAKE: True,
    KEY_CONTAINER_LOCATOR: "",
    KEY_BASE_SCOPE: "",
    KEY_ACTIVE_TARGET_ID: None,
    KEY_RUN_COUNT: 0,
    KEY_NOTIFICATION_LEDGER: {},
}

ChangeCallback = Callable[[set[str], dict[str, Any]], None]


def _load_settings(path: Path) -> dict[str, Any]:
    data = read_json_safe(path, default={}, context="settings")
    if not isinstance(data, dict):
        LOGGER.warning("Settings file is not a mapping; ignoring", extra={"category": "config"})
        return {}
    return data


class SettingsStore:
    """Key/value settings shared by the scheduler, the cycle runner and the UI.

    Every mutation runs under one lock and is written through to ``path``
    (when given) with an atomic replace, so concurrent triggers never lose an
    update. Listeners receive the changed keys and their new values after the
    lock is released.
    """

    def __init__(self, path: Path | None = None, *, defaults: dict[str, Any] | None = None) -> None:
        self._path = path
        self._lock = RLock()
        self._defaults = copy.deepcopy(defaults if defaults is not None else DEFAULT_SETTINGS)
        self._listeners: dict[str, ChangeCallback] = {}
        stored = _load_settings(path) if path is not None else {}
        self._data = {**copy.deepcopy(self._defaults), **stored}
        self._disk_snapshot = copy.deepcopy(stored)
        if path is not None and set(self._defaults) - set(stored):
            self._persist()

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        with self._lock:
            if keys is None:
                return copy.deepcopy(self._data)
            return {key: copy.deepcopy(self._data.get(key, self._defaults.get(key))) for key in keys}

    def set(self, partial: dict[str, Any]) -> None:
        self.update(lambda _current: partial)

    def update(
        self, mutator: Callable[[dict[str, Any]], dict[str, Any] | None]
    ) -> dict[str, Any]:
        """Atomically compute a partial update from the current values and apply it."""
        with self._lock:
            partial = mutator(copy.deepcopy(self._data)) or {}
            changed = self._apply(partial)
        self._notify(changed)
        return {key: copy.deepcopy(value) for key, value in partial.items()}

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        token = uuid4().hex
        with self._lock:
            self._listeners[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def refresh(self) -> set[str]:
        """Pick up edits made to the settings file by another process."""
        if self._path is None:
            return set()
        stored = _load_settings(self._path)
        with self._lock:
            if stored == self._disk_snapshot:
                return set()
            changed = {
                key: copy.deepcopy(value)
                for key, value in stored.items()
                if self._data.get(key) != value
            }
            self._data.update(copy.deepcopy(changed))
            self._disk_snapshot = copy.deepcopy(stored)
        if changed:
            LOGGER.info(
                "External settings change detected: %s",
                ", ".join(sorted(changed)),
                extra={"category": "config"},
            )
        self._notify(changed)
        return set(changed)

    def _apply(self, partial: dict[str, Any]) -> dict[str, Any]:
        changed: dict[str, Any] = {}
        for key, value in partial.items():
            if self._data.get(key) != value or key not in self._data:
                changed[key] = copy.deepcopy(value)
        if not changed:
            return {}
        self._data.update(copy.deepcopy(changed))
        self._persist()
        return changed

    def _persist(self) -> None:
        if self._path is None:
            return
        try:
            atomic_write_text(
                self._path,
                json.dumps(self._data, ensure_ascii=False, indent=2, sort_keys=True),
                encoding="utf-8",
            )
            self._disk_snapshot = copy.deepcopy(self._data)
        except OSError as exc:
            LOGGER.exception(
                "Settings persistence failed: %s",
                exc,
                extra={"category": "error"},
            )

    def _notify(self, changed: dict[str, Any]) -> None:
        if not changed:
            return
        with self._lock:
            listeners = list(self._listeners.values())
        keys = set(changed)
        for listener in listeners:
            try:
                listener(set(keys), copy.deepcopy(changed))
            except Exception as exc:
                LOGGER.exception(
                    "Settings listener failed: %s",
                    exc,
                    extra={"category": "error"},
                )
