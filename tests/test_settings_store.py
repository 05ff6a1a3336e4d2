from __future__ import annotations

import json
from pathlib import Path
from threading import Thread
from typing import Any

from pagewatcher.settings_store import (
    DEFAULT_SETTINGS,
    KEY_INTERVAL_SECONDS,
    KEY_KEYWORDS,
    KEY_RUN_COUNT,
    SettingsStore,
)


def test_defaults_and_partial_get() -> None:
    store = SettingsStore()

    assert store.get([KEY_INTERVAL_SECONDS]) == {KEY_INTERVAL_SECONDS: 60}
    assert store.get()[KEY_KEYWORDS] == DEFAULT_SETTINGS[KEY_KEYWORDS]


def test_returned_values_are_copies() -> None:
    store = SettingsStore()

    store.get([KEY_KEYWORDS])[KEY_KEYWORDS].append("mutated")

    assert "mutated" not in store.get([KEY_KEYWORDS])[KEY_KEYWORDS]


def test_concurrent_updates_are_not_lost() -> None:
    store = SettingsStore()

    def bump() -> None:
        for _ in range(200):
            store.update(lambda current: {KEY_RUN_COUNT: current[KEY_RUN_COUNT] + 1})

    workers = [Thread(target=bump) for _ in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert store.get([KEY_RUN_COUNT])[KEY_RUN_COUNT] == 800


def test_update_returning_none_changes_nothing() -> None:
    store = SettingsStore()
    seen: list[set[str]] = []
    store.on_change(lambda keys, _values: seen.append(keys))

    assert store.update(lambda _current: None) == {}
    assert seen == []


def test_listeners_receive_changed_keys_only() -> None:
    store = SettingsStore()
    seen: list[tuple[set[str], dict[str, Any]]] = []
    unsubscribe = store.on_change(lambda keys, values: seen.append((keys, values)))

    store.set({KEY_INTERVAL_SECONDS: 60, KEY_KEYWORDS: ["P1"]})
    unsubscribe()
    store.set({KEY_KEYWORDS: ["P2"]})

    assert seen == [({KEY_KEYWORDS}, {KEY_KEYWORDS: ["P1"]})]


def test_failing_listener_does_not_block_others() -> None:
    store = SettingsStore()
    seen: list[set[str]] = []

    def broken(_keys: set[str], _values: dict[str, Any]) -> None:
        raise RuntimeError("listener bug")

    store.on_change(broken)
    store.on_change(lambda keys, _values: seen.append(keys))
    store.set({KEY_INTERVAL_SECONDS: 300})

    assert seen == [{KEY_INTERVAL_SECONDS}]


def test_values_persist_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).set({KEY_INTERVAL_SECONDS: 240})

    reopened = SettingsStore(path)

    assert reopened.get([KEY_INTERVAL_SECONDS])[KEY_INTERVAL_SECONDS] == 240
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert set(DEFAULT_SETTINGS) <= set(stored)


def test_corrupt_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    store = SettingsStore(path)

    assert store.get([KEY_INTERVAL_SECONDS])[KEY_INTERVAL_SECONDS] == 60


def test_refresh_picks_up_external_edit(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    store = SettingsStore(path)
    seen: list[set[str]] = []
    store.on_change(lambda keys, _values: seen.append(keys))

    stored = json.loads(path.read_text(encoding="utf-8"))
    stored[KEY_INTERVAL_SECONDS] = 600
    path.write_text(json.dumps(stored), encoding="utf-8")

    assert store.refresh() == {KEY_INTERVAL_SECONDS}
    assert store.get([KEY_INTERVAL_SECONDS])[KEY_INTERVAL_SECONDS] == 600
    assert seen == [{KEY_INTERVAL_SECONDS}]
    assert store.refresh() == set()


def test_refresh_without_path_is_noop() -> None:
    assert SettingsStore().refresh() == set()
