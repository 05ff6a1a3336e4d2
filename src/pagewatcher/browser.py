"""Selenium-backed target lifecycle and live document.

Window handles are the target ids. The driver is not thread-safe, so every
call that touches it goes through :meth:`SeleniumLifecycle.execute`, which
holds one lock, switches to the handle and switches back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Event, RLock, Thread
from typing import Any, Callable
from uuid import uuid4

from selenium import webdriver
from selenium.common.exceptions import (
    InvalidSelectorException,
    NoSuchFrameException,
    NoSuchWindowException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webelement import WebElement
from selenium.webdriver.support.ui import WebDriverWait

from .config import BrowserConfig
from .models import TargetInfo

LOGGER = logging.getLogger(__name__)

EVENT_POLL_SECONDS = 0.5
MUTATION_WAIT_SLICE_SECONDS = 0.5
SCRIPT_TIMEOUT_MARGIN_SECONDS = 5.0
MAX_FRAME_DEPTH = 3

_TEXT_SCRIPT = "return arguments[0].innerText || arguments[0].textContent || '';"
_STATE_SCRIPT = (
    "return [document.readyState, location.href, "
    "document.hasFocus ? document.hasFocus() : false];"
)
_OBSERVE_SCRIPT = """
const node = arguments[0];
const token = arguments[1];
window.__pagewatcher = window.__pagewatcher || {};
const slot = {count: 0, waiters: [], observer: null};
slot.observer = new MutationObserver(() => {
  slot.count += 1;
  const waiters = slot.waiters;
  slot.waiters = [];
  waiters.forEach((wake) => wake(slot.count));
});
slot.observer.observe(node, {subtree: true, childList: true, characterData: true});
window.__pagewatcher[token] = slot;
return true;
"""
# Async: resolves with the mutation count as soon as it passes ``seen``, with
# the unchanged count when the slice ends, or -1 when the observer is gone.
_WAIT_SCRIPT = """
const token = arguments[0];
const seen = arguments[1];
const sliceMs = arguments[2];
const done = arguments[arguments.length - 1];
const slot = (window.__pagewatcher || {})[token];
if (!slot) { done(-1); return; }
if (slot.count > seen) { done(slot.count); return; }
let timer = null;
const wake = (count) => { clearTimeout(timer); done(count); };
timer = setTimeout(() => {
  slot.waiters = slot.waiters.filter((waiter) => waiter !== wake);
  done(slot.count);
}, sliceMs);
slot.waiters.push(wake);
"""
_DISCONNECT_SCRIPT = """
const registry = window.__pagewatcher || {};
const slot = registry[arguments[0]];
if (slot) {
  slot.observer.disconnect();
  slot.waiters.forEach((wake) => wake(-1));
  delete registry[arguments[0]];
}
return true;
"""


def build_driver(config: BrowserConfig) -> webdriver.Chrome:
    options = Options()
    if config.headless:
        options.add_argument("--headless=new")
    if config.user_data_dir:
        options.add_argument(f"--user-data-dir={config.user_data_dir}")
    options.add_argument("--window-size=1600,1000")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    if config.use_webdriver_manager:
        from webdriver_manager.chrome import ChromeDriverManager

        driver = webdriver.Chrome(
            service=Service(ChromeDriverManager().install()), options=options
        )
    else:
        driver = webdriver.Chrome(options=options)
    if config.start_url:
        driver.get(config.start_url)
    LOGGER.info("Browser started", extra={"category": "browser"})
    return driver


@dataclass
class _Observed:
    location: str = ""
    ready_state: str = ""
    focused: bool = False


class SeleniumLifecycle:
    def __init__(self, driver: Any, *, poll_seconds: float = EVENT_POLL_SECONDS) -> None:
        self._driver = driver
        self._lock = RLock()
        self._poll_seconds = poll_seconds
        self._removed: list[Callable[[str], None]] = []
        self._location: list[Callable[[str, str], None]] = []
        self._focused: list[Callable[[str], None]] = []
        self._tracked: dict[str, _Observed] = {}
        self._stop_event = Event()
        self._thread: Thread | None = None

    def execute(self, target_id: str, action: Callable[[Any], Any]) -> Any:
        with self._lock:
            previous = None
            try:
                previous = self._driver.current_window_handle
            except WebDriverException:
                previous = None
            if previous != target_id:
                self._driver.switch_to.window(target_id)
            try:
                return action(self._driver)
            finally:
                if previous and previous != target_id:
                    try:
                        self._driver.switch_to.window(previous)
                    except WebDriverException:
                        LOGGER.debug("Previous window gone", extra={"category": "browser"})

    def current_target_id(self) -> str | None:
        with self._lock:
            try:
                return str(self._driver.current_window_handle)
            except WebDriverException:
                return None

    def get(self, target_id: str) -> TargetInfo | None:
        with self._lock:
            if target_id not in self._handles():
                return None
            try:
                state = self.execute(target_id, lambda d: d.execute_script(_STATE_SCRIPT))
            except NoSuchWindowException:
                return None
            self._tracked.setdefault(target_id, _Observed())
        return TargetInfo(location=str(state[1] or ""), status=str(state[0] or ""))

    def reload(self, target_id: str) -> None:
        self.execute(target_id, lambda d: d.refresh())

    def wait_until_complete(self, target_id: str, timeout_seconds: float) -> bool:
        def ready(driver: Any) -> bool:
            return driver.execute_script("return document.readyState") == "complete"

        try:
            self.execute(
                target_id,
                lambda d: WebDriverWait(d, timeout_seconds).until(ready),
            )
        except TimeoutException:
            return False
        return True

    def document(self, target_id: str) -> "SeleniumDocument":
        return SeleniumDocument(self, target_id)

    def on_removed(self, callback: Callable[[str], None]) -> None:
        self._removed.append(callback)

    def on_location_changed(self, callback: Callable[[str, str], None]) -> None:
        self._location.append(callback)

    def on_focused(self, callback: Callable[[str], None]) -> None:
        self._focused.append(callback)

    def start_events(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._watch_events, name="browser-events", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(2.0)
        with self._lock:
            try:
                self._driver.quit()
            except WebDriverException as exc:
                LOGGER.debug("Driver quit failed: %s", exc, extra={"category": "browser"})

    def _handles(self) -> set[str]:
        try:
            return set(self._driver.window_handles)
        except WebDriverException:
            return set()

    def _watch_events(self) -> None:
        while not self._stop_event.wait(self._poll_seconds):
            try:
                self._poll_once()
            except Exception as exc:
                LOGGER.warning("Browser event poll failed: %s", exc, extra={"category": "browser"})

    def _poll_once(self) -> None:
        events: list[Callable[[], None]] = []
        with self._lock:
            handles = self._handles()
            for target_id in list(self._tracked):
                if target_id not in handles:
                    self._tracked.pop(target_id, None)
                    events.extend(_bind(cb, target_id) for cb in self._removed)
                    continue
                observed = self._tracked[target_id]
                try:
                    state = self.execute(target_id, lambda d: d.execute_script(_STATE_SCRIPT))
                except WebDriverException:
                    continue
                ready_state, location, focused = str(state[0]), str(state[1]), bool(state[2])
                if ready_state != observed.ready_state or location != observed.location:
                    events.extend(_bind(cb, target_id, ready_state) for cb in self._location)
                if focused and not observed.focused:
                    events.extend(_bind(cb, target_id) for cb in self._focused)
                self._tracked[target_id] = _Observed(location, ready_state, focused)
        for event in events:
            try:
                event()
            except Exception as exc:
                LOGGER.exception("Browser event handler failed: %s", exc, extra={"category": "browser"})


def _bind(callback: Callable[..., None], *args: Any) -> Callable[[], None]:
    return lambda: callback(*args)


FramePath = tuple[int, ...]


class SeleniumNode:
    def __init__(
        self, document: "SeleniumDocument", element: WebElement, frame_path: FramePath = ()
    ) -> None:
        self._document = document
        self._element = element
        self._frame_path = frame_path

    @property
    def frame_path(self) -> FramePath:
        return self._frame_path

    def text(self) -> str:
        return str(
            self._document.run_in_frame(
                self._frame_path, lambda d: d.execute_script(_TEXT_SCRIPT, self._element)
            )
        )

    def select(self, selector: str) -> list["SeleniumNode"]:
        try:
            elements = self._document.run_in_frame(
                self._frame_path,
                lambda _d: self._element.find_elements(By.CSS_SELECTOR, selector),
            )
        except InvalidSelectorException:
            return []
        return [SeleniumNode(self._document, element, self._frame_path) for element in elements]

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._document.observe(self._element, callback, frame_path=self._frame_path)


class SeleniumDocument:
    """Live view of one window, including the iframes nested inside it.

    Lookups search the top document first, then each iframe depth first, and
    return the first hit; nodes remember their frame so later reads switch
    back into it.
    """

    def __init__(
        self,
        lifecycle: SeleniumLifecycle,
        target_id: str,
        *,
        wait_slice_seconds: float = MUTATION_WAIT_SLICE_SECONDS,
        max_frame_depth: int = MAX_FRAME_DEPTH,
    ) -> None:
        self._lifecycle = lifecycle
        self._target_id = target_id
        self._wait_slice_seconds = wait_slice_seconds
        self._max_frame_depth = max_frame_depth

    def run(self, action: Callable[[Any], Any]) -> Any:
        return self._lifecycle.execute(self._target_id, action)

    def run_in_frame(self, frame_path: FramePath, action: Callable[[Any], Any]) -> Any:
        def framed(driver: Any) -> Any:
            try:
                _enter_frame(driver, frame_path)
                return action(driver)
            finally:
                _leave_frames(driver)

        return self.run(framed)

    def get_element_by_id(self, element_id: str) -> SeleniumNode | None:
        return self._find_first(lambda d: d.find_elements(By.ID, element_id))

    def select_one(self, selector: str) -> SeleniumNode | None:
        try:
            return self._find_first(lambda d: d.find_elements(By.CSS_SELECTOR, selector))
        except InvalidSelectorException:
            return None

    def _find_first(self, finder: Callable[[Any], list[Any]]) -> SeleniumNode | None:
        def walk(driver: Any, path: FramePath) -> tuple[FramePath, Any] | None:
            _enter_frame(driver, path)
            elements = finder(driver)
            if elements:
                return path, elements[0]
            if len(path) >= self._max_frame_depth:
                return None
            frame_count = len(driver.find_elements(By.TAG_NAME, "iframe"))
            for index in range(frame_count):
                try:
                    found = walk(driver, path + (index,))
                except (NoSuchFrameException, StaleElementReferenceException):
                    # Frame detached while walking.
                    continue
                if found is not None:
                    return found
            return None

        def search(driver: Any) -> tuple[FramePath, Any] | None:
            try:
                return walk(driver, ())
            finally:
                _leave_frames(driver)

        found = self.run(search)
        if found is None:
            return None
        path, element = found
        if path:
            LOGGER.debug("Element found in frame %s", path, extra={"category": "browser"})
        return SeleniumNode(self, element, path)

    def observe(
        self,
        element: WebElement,
        callback: Callable[[], None],
        *,
        frame_path: FramePath = (),
    ) -> Callable[[], None]:
        """Install a MutationObserver on ``element`` and wait on it.

        A waiter thread blocks in an async script that the observer resolves
        on its first batch of mutations, so the callback fires as soon as the
        page changes. Each wait is bounded to one slice so the driver lock is
        released between waits. The returned function stops waiting and
        disconnects the observer; calling it more than once is harmless.
        """
        token = f"pw_{uuid4().hex}"
        slice_ms = int(self._wait_slice_seconds * 1000)

        def install(driver: Any) -> Any:
            driver.set_script_timeout(self._wait_slice_seconds + SCRIPT_TIMEOUT_MARGIN_SECONDS)
            return driver.execute_script(_OBSERVE_SCRIPT, element, token)

        self.run_in_frame(frame_path, install)
        stop_event = Event()

        def wait_for_mutations() -> None:
            seen = 0
            while not stop_event.is_set():
                try:
                    count = int(
                        self.run_in_frame(
                            frame_path,
                            lambda d: d.execute_async_script(_WAIT_SCRIPT, token, seen, slice_ms),
                        )
                    )
                except WebDriverException as exc:
                    LOGGER.debug("Mutation wait failed: %s", exc, extra={"category": "browser"})
                    stop_event.wait(self._wait_slice_seconds)
                    continue
                if count < 0:
                    # Page navigated away; the observer is gone with it.
                    return
                if count > seen and not stop_event.is_set():
                    seen = count
                    callback()

        thread = Thread(target=wait_for_mutations, name=f"mutations-{token[-6:]}", daemon=True)
        thread.start()

        def unsubscribe() -> None:
            if stop_event.is_set():
                return
            stop_event.set()
            try:
                self.run_in_frame(frame_path, lambda d: d.execute_script(_DISCONNECT_SCRIPT, token))
            except WebDriverException:
                LOGGER.debug("Observer disconnect skipped", extra={"category": "browser"})

        return unsubscribe


def _enter_frame(driver: Any, frame_path: FramePath) -> None:
    driver.switch_to.default_content()
    for index in frame_path:
        frames = driver.find_elements(By.TAG_NAME, "iframe")
        if index >= len(frames):
            raise NoSuchFrameException(f"iframe {index} of {frame_path} is gone")
        driver.switch_to.frame(frames[index])


def _leave_frames(driver: Any) -> None:
    try:
        driver.switch_to.default_content()
    except WebDriverException:
        LOGGER.debug("Could not return to top document", extra={"category": "browser"})
