from __future__ import annotations

import ctypes
import logging
from threading import Event, Lock, Thread

LOGGER = logging.getLogger(__name__)

ES_CONTINUOUS = 0x80000000
ES_SYSTEM_REQUIRED = 0x00000001
ES_DISPLAY_REQUIRED = 0x00000002


def _apply_execution_state(enabled: bool) -> bool:
    windll = getattr(ctypes, "windll", None)
    kernel32 = getattr(windll, "kernel32", None) if windll is not None else None
    if kernel32 is None:
        return False
    flags = ES_CONTINUOUS
    if enabled:
        flags |= ES_SYSTEM_REQUIRED | ES_DISPLAY_REQUIRED
    try:
        return bool(kernel32.SetThreadExecutionState(flags))
    except Exception as exc:
        LOGGER.warning("SetThreadExecutionState failed: %s", exc, extra={"category": "power"})
        return False


class KeepAwake:
    """Holds the keep-awake request on one dedicated thread.

    The execution state belongs to the thread that set it, so acquire and
    release both happen on the holder thread whichever thread asks.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._release: Event | None = None
        self._thread: Thread | None = None

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._release is not None

    def set(self, enabled: bool) -> bool:
        with self._lock:
            if enabled:
                if self._release is not None:
                    return True
                release = Event()
                applied = Event()
                thread = Thread(
                    target=self._hold,
                    args=(release, applied),
                    name="keep-awake",
                    daemon=True,
                )
                self._release = release
                self._thread = thread
                thread.start()
                applied.wait(2.0)
                return True
            release, thread = self._release, self._thread
            self._release = None
            self._thread = None
        if release is None:
            return False
        release.set()
        if thread is not None:
            thread.join(2.0)
        return True

    def _hold(self, release: Event, applied: Event) -> None:
        active = _apply_execution_state(True)
        LOGGER.info(
            "Keep-awake %s",
            "enabled" if active else "unavailable on this platform",
            extra={"category": "power"},
        )
        applied.set()
        release.wait()
        if active:
            _apply_execution_state(False)
            LOGGER.info("Keep-awake released", extra={"category": "power"})


_KEEP_AWAKE = KeepAwake()


def set_keep_awake(enabled: bool) -> bool:
    return _KEEP_AWAKE.set(enabled)
