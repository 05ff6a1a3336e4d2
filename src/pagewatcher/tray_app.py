from __future__ import annotations

import ctypes
import logging
import os
from threading import Lock
from typing import Any

from PIL import Image, ImageDraw

from .app import PageWatcherApp
from .cli_control import COMMAND_EXIT, COMMAND_SCAN, COMMAND_START, COMMAND_STOP
from .indicator import IndicatorState

LOGGER = logging.getLogger(__name__)

APP_TITLE = "Page Watcher"
MB_ICONEXCLAMATION = 0x30

BADGE_COLORS: dict[IndicatorState, tuple[int, int, int]] = {
    IndicatorState.OFF: (0x77, 0x77, 0x77),
    IndicatorState.ON: (0x34, 0xA8, 0x53),
    IndicatorState.HIT: (0xEA, 0x43, 0x35),
}


def _load_pystray() -> Any:
    # Imported on use: pystray picks a display backend at import time.
    import pystray

    return pystray


def _build_image(state: IndicatorState = IndicatorState.OFF) -> Image.Image:
    image = Image.new("RGB", (64, 64), color=(28, 40, 56))
    draw = ImageDraw.Draw(image)
    draw.ellipse((8, 14, 56, 42), outline=(255, 255, 255), width=3)
    draw.ellipse((24, 20, 40, 36), fill=(255, 255, 255))
    draw.rectangle((4, 44, 60, 62), fill=BADGE_COLORS[state])
    draw.text((8, 46), state.value, fill=(255, 255, 255))
    return image


def _play_system_sound() -> bool:
    windll = getattr(ctypes, "windll", None)
    user32 = getattr(windll, "user32", None) if windll is not None else None
    if user32 is None:
        LOGGER.debug("System sound unavailable on this platform", extra={"category": "notify"})
        return False
    return bool(user32.MessageBeep(MB_ICONEXCLAMATION))


class TrayNotifier:
    """Notifier backed by the tray icon: badge image, balloon alerts, system sound."""

    def __init__(self, icon: Any | None = None) -> None:
        self._lock = Lock()
        self._icon = icon
        self._state = IndicatorState.OFF

    def attach(self, icon: Any) -> None:
        with self._lock:
            self._icon = icon
        self._paint()

    @property
    def state(self) -> IndicatorState:
        with self._lock:
            return self._state

    def show_alert(self, title: str, message: str) -> None:
        with self._lock:
            icon = self._icon
        if icon is None:
            LOGGER.info("Alert (no tray): %s - %s", title, message, extra={"category": "notify"})
            return
        icon.notify(message, title)

    def play_sound(self) -> None:
        _play_system_sound()

    def set_indicator(self, target_id: str, state: Any) -> None:
        with self._lock:
            self._state = IndicatorState(state)
        LOGGER.debug(
            "Indicator %s for %s",
            self._state.value,
            target_id,
            extra={"category": "indicator"},
        )
        self._paint()

    def _paint(self) -> None:
        with self._lock:
            icon = self._icon
            state = self._state
        if icon is None:
            return
        icon.icon = _build_image(state)
        icon.title = f"{APP_TITLE} - {state.value}"


def run_tray(app: PageWatcherApp, notifier: TrayNotifier) -> None:
    pystray = _load_pystray()

    def on_watch(_icon: Any, _item: Any) -> None:
        app.submit(COMMAND_START)

    def on_stop(_icon: Any, _item: Any) -> None:
        app.submit(COMMAND_STOP)

    def on_scan(_icon: Any, _item: Any) -> None:
        app.submit(COMMAND_SCAN, {"refresh": True})

    def on_status(icon: Any, _item: Any) -> None:
        snapshot = app.status.snapshot()
        summary = snapshot.last_cycle_result or "no checks yet"
        icon.notify(f"{snapshot.indicator}: {summary}", APP_TITLE)

    def on_exit(icon: Any, _item: Any) -> None:
        app.submit(COMMAND_EXIT)
        icon.stop()

    icon = pystray.Icon(
        "pagewatcher",
        _build_image(IndicatorState.OFF),
        APP_TITLE,
        menu=pystray.Menu(
            pystray.MenuItem("Watch current page", on_watch, default=True),
            pystray.MenuItem("Stop watching", on_stop),
            pystray.MenuItem("Scan now", on_scan),
            pystray.MenuItem("Status", on_status),
            pystray.MenuItem("Exit", on_exit),
        ),
    )
    notifier.attach(icon)
    loop_thread = app.start_loop_thread()

    def setup(started: Any) -> None:
        started.visible = True

    try:
        if os.name == "nt":
            icon.run(setup)
        else:
            icon.run_detached(setup)
            app.stop_event.wait()
            icon.stop()
    finally:
        app.stop_event.set()
        loop_thread.join(timeout=10)
