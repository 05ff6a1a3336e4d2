"""Narrow collaborator interfaces consumed by the watch-cycle engine.

The engine never talks to a browser, a tray icon or a file directly; it is
handed objects that satisfy these protocols. Concrete implementations live in
``settings_store``, ``timers``, ``browser``, ``document`` and ``tray_app``.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Protocol

from .models import TargetInfo

ChangeCallback = Callable[[set[str], dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class ContentNode(Protocol):
    def text(self) -> str: ...

    def select(self, selector: str) -> list["ContentNode"]: ...

    def subscribe(self, callback: Callable[[], None]) -> Unsubscribe: ...


class LiveDocument(Protocol):
    def get_element_by_id(self, element_id: str) -> ContentNode | None: ...

    def select_one(self, selector: str) -> ContentNode | None: ...


class Persistence(Protocol):
    def get(self, keys: Iterable[str] | None = None) -> dict[str, Any]: ...

    def set(self, partial: dict[str, Any]) -> None: ...

    def update(
        self, mutator: Callable[[dict[str, Any]], dict[str, Any] | None]
    ) -> dict[str, Any]: ...

    def on_change(self, callback: ChangeCallback) -> Unsubscribe: ...

    def refresh(self) -> set[str]: ...


class Timers(Protocol):
    def create_recurring(
        self, name: str, period_seconds: float, callback: Callable[[], None]
    ) -> None: ...

    def cancel(self, name: str) -> bool: ...

    def period(self, name: str) -> float | None: ...

    def names(self) -> list[str]: ...

    def cancel_all(self) -> None: ...


class TargetLifecycle(Protocol):
    def get(self, target_id: str) -> TargetInfo | None: ...

    def reload(self, target_id: str) -> None: ...

    def wait_until_complete(self, target_id: str, timeout_seconds: float) -> bool: ...

    def document(self, target_id: str) -> LiveDocument: ...

    def current_target_id(self) -> str | None: ...

    def on_removed(self, callback: Callable[[str], None]) -> None: ...

    def on_location_changed(self, callback: Callable[[str, str], None]) -> None: ...

    def on_focused(self, callback: Callable[[str], None]) -> None: ...


class Notifier(Protocol):
    def show_alert(self, title: str, message: str) -> None: ...

    def play_sound(self) -> None: ...

    def set_indicator(self, target_id: str, state: Any) -> None: ...
