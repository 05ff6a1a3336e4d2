"""Test doubles shared by the engine tests."""

from __future__ import annotations

from typing import Any, Callable

from pagewatcher.document import SoupDocument
from pagewatcher.indicator import IndicatorState
from pagewatcher.models import TargetInfo
from pagewatcher.settings_store import (
    DEFAULT_SETTINGS,
    KEY_BASE_SCOPE,
    KEY_CONTAINER_LOCATOR,
    SettingsStore,
)

SCOPE = "https://example.service-now.com"
PAGE_URL = f"{SCOPE}/now/nav/ui/classic/target/incident_list.do"
OTHER_URL = "https://intranet.example.org/home"
CONTAINER_ID = "watch-container"


def page_html(cell_text: str = "Priority: 4 - Low", *, container_id: str = CONTAINER_ID) -> str:
    return (
        "<html><body>"
        "<div id='header'>1 - Critical appears outside the container</div>"
        f"<div id='{container_id}'><table><tr>"
        f"<td class='vt'>{cell_text}</td>"
        "</tr></table></div>"
        "</body></html>"
    )


def make_store(**overrides: Any) -> SettingsStore:
    defaults = {
        **DEFAULT_SETTINGS,
        KEY_BASE_SCOPE: SCOPE,
        KEY_CONTAINER_LOCATOR: CONTAINER_ID,
        **overrides,
    }
    return SettingsStore(None, defaults=defaults)


class FakeNotifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []
        self.sounds = 0
        self.indicators: list[tuple[str, IndicatorState]] = []

    def show_alert(self, title: str, message: str) -> None:
        self.alerts.append((title, message))

    def play_sound(self) -> None:
        self.sounds += 1

    def set_indicator(self, target_id: str, state: Any) -> None:
        self.indicators.append((target_id, IndicatorState(state)))

    def states(self) -> list[IndicatorState]:
        return [state for _target, state in self.indicators]


class FakeLifecycle:
    def __init__(self) -> None:
        self.targets: dict[str, TargetInfo] = {}
        self.documents: dict[str, Any] = {}
        self.current: str | None = None
        self.reloads: list[str] = []
        self.waits: list[float] = []
        self.complete = True
        self._removed: list[Callable[[str], None]] = []
        self._location: list[Callable[[str, str], None]] = []
        self._focused: list[Callable[[str], None]] = []

    def add(self, target_id: str, location: str = PAGE_URL, document: Any = None) -> Any:
        self.targets[target_id] = TargetInfo(location=location)
        self.documents[target_id] = document if document is not None else SoupDocument(page_html())
        self.current = target_id
        return self.documents[target_id]

    def get(self, target_id: str) -> TargetInfo | None:
        return self.targets.get(target_id)

    def reload(self, target_id: str) -> None:
        self.reloads.append(target_id)

    def wait_until_complete(self, target_id: str, timeout_seconds: float) -> bool:
        self.waits.append(timeout_seconds)
        return self.complete

    def document(self, target_id: str) -> Any:
        return self.documents[target_id]

    def current_target_id(self) -> str | None:
        return self.current

    def on_removed(self, callback: Callable[[str], None]) -> None:
        self._removed.append(callback)

    def on_location_changed(self, callback: Callable[[str, str], None]) -> None:
        self._location.append(callback)

    def on_focused(self, callback: Callable[[str], None]) -> None:
        self._focused.append(callback)

    def remove(self, target_id: str) -> None:
        self.targets.pop(target_id, None)
        for callback in list(self._removed):
            callback(target_id)

    def navigate(self, target_id: str, status: str, location: str | None = None) -> None:
        info = self.targets[target_id]
        self.targets[target_id] = TargetInfo(location=location or info.location, status=status)
        for callback in list(self._location):
            callback(target_id, status)

    def focus(self, target_id: str) -> None:
        for callback in list(self._focused):
            callback(target_id)


class ManualTimers:
    """Records schedules without threads; :meth:`fire` runs a callback inline."""

    def __init__(self) -> None:
        self.schedules: dict[str, tuple[float, Callable[[], None]]] = {}
        self.created: list[tuple[str, float]] = []
        self.cancelled: list[str] = []

    def create_recurring(
        self, name: str, period_seconds: float, callback: Callable[[], None]
    ) -> None:
        self.schedules[name] = (float(period_seconds), callback)
        self.created.append((name, float(period_seconds)))

    def cancel(self, name: str) -> bool:
        self.cancelled.append(name)
        return self.schedules.pop(name, None) is not None

    def period(self, name: str) -> float | None:
        entry = self.schedules.get(name)
        return entry[0] if entry else None

    def names(self) -> list[str]:
        return sorted(self.schedules)

    def cancel_all(self) -> None:
        for name in self.names():
            self.cancel(name)

    def fire(self, name: str) -> None:
        self.schedules[name][1]()


class BrokenDocument:
    """Live document whose every lookup fails, as when the page navigates mid-scan."""

    def get_element_by_id(self, element_id: str) -> Any:
        raise RuntimeError("target navigated away")

    def select_one(self, selector: str) -> Any:
        raise RuntimeError("target navigated away")
