from __future__ import annotations

import logging
import time
from threading import Event, Lock
from typing import Callable, Iterable, Sequence

from .errors import ContainerNotFound, MatchInvocationFailure
from .interfaces import ContentNode, LiveDocument
from .models import REASON_TIMEOUT, MatchResult

LOGGER = logging.getLogger(__name__)

DEFAULT_PROBE_WAIT_MS = 8000
DEFAULT_OBSERVE_TIMEOUT_MS = 15000
CONTAINER_POLL_SECONDS = 0.2
TEXT_BEARING_SELECTOR = "td.vt, td, div, span"
WIDGET_SYSID_SELECTOR = '.grid-widget-content[data-original-widget-sysid="{sys_id}"]'

LocatorStrategy = Callable[[LiveDocument, str], "ContentNode | None"]


def normalize_text(value: str) -> str:
    return " ".join((value or "").split())


def first_keyword(text: str, keywords: Iterable[str]) -> str | None:
    for keyword in keywords:
        if keyword and keyword in text:
            return keyword
    return None


def _by_hash_selector(document: LiveDocument, locator: str) -> ContentNode | None:
    if not locator.startswith("#"):
        return None
    return document.select_one(locator)


def _by_element_id(document: LiveDocument, locator: str) -> ContentNode | None:
    if locator.startswith("#"):
        return None
    return document.get_element_by_id(locator)


def _by_selector(document: LiveDocument, locator: str) -> ContentNode | None:
    if locator.startswith("#"):
        return None
    return document.select_one(locator)


def _by_widget_sysid(document: LiveDocument, locator: str) -> ContentNode | None:
    sys_id = locator[1:] if locator.startswith("#") else locator
    if not sys_id or '"' in sys_id:
        return None
    return document.select_one(WIDGET_SYSID_SELECTOR.format(sys_id=sys_id))


LOCATOR_STRATEGIES: tuple[LocatorStrategy, ...] = (
    _by_hash_selector,
    _by_element_id,
    _by_selector,
    _by_widget_sysid,
)


class _MatchRace:
    """Single-resolution race between a mutation hit and the timeout."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._done = Event()
        self._result: MatchResult | None = None
        self._error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def resolve(self, result: MatchResult) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self._result = result
            self._done.set()
            return True

    def fail(self, error: BaseException) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self._error = error
            self._done.set()
            return True

    def wait(self, timeout: float) -> bool:
        return self._done.wait(max(0.0, timeout))

    def outcome(self) -> MatchResult:
        if self._error is not None:
            raise self._error
        if self._result is None:
            raise RuntimeError("race read before resolution")
        return self._result


class ContentMatcher:
    """Keyword matching against the container of one live document.

    The matcher only sees the document it was built with; locator, keywords
    and time budget are passed per call.
    """

    def __init__(
        self,
        document: LiveDocument,
        *,
        strategies: Sequence[LocatorStrategy] = LOCATOR_STRATEGIES,
        poll_seconds: float = CONTAINER_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._document = document
        self._strategies = tuple(strategies)
        self._poll_seconds = max(0.01, poll_seconds)
        self._sleep = sleep
        self._clock = clock

    def probe(
        self,
        locator: str,
        keywords: Sequence[str],
        max_wait_ms: int = DEFAULT_PROBE_WAIT_MS,
    ) -> MatchResult:
        try:
            container = self._wait_for_container(locator, max_wait_ms)
        except ContainerNotFound:
            LOGGER.info("Container not found during probe", extra={"category": "scan"})
            return MatchResult.container_not_found()

        keyword = self._guarded(lambda: self._scan(container, keywords))
        if keyword is None:
            return MatchResult.miss()
        return MatchResult.hit(keyword)

    def observe_until_match(
        self,
        locator: str,
        keywords: Sequence[str],
        timeout_ms: int = DEFAULT_OBSERVE_TIMEOUT_MS,
    ) -> MatchResult:
        try:
            container = self._wait_for_container(locator, timeout_ms)
        except ContainerNotFound:
            LOGGER.info("Container not found during observation", extra={"category": "scan"})
            return MatchResult.container_not_found()

        def check() -> str | None:
            return first_keyword(normalize_text(container.text()), keywords)

        keyword = self._guarded(check)
        if keyword is not None:
            return MatchResult.hit(keyword)

        race = _MatchRace()

        def on_mutation() -> None:
            if race.done:
                return
            try:
                hit = check()
            except Exception as exc:
                race.fail(MatchInvocationFailure(f"content check failed: {exc}"))
                return
            if hit is not None:
                race.resolve(MatchResult.hit(hit))

        unsubscribe = self._guarded(lambda: container.subscribe(on_mutation))
        try:
            # Content may have changed between the first check and subscribing.
            on_mutation()
            if not race.wait(timeout_ms / 1000.0):
                race.resolve(MatchResult.miss(REASON_TIMEOUT))
        finally:
            try:
                unsubscribe()
            except Exception:
                LOGGER.debug("Mutation unsubscribe failed", exc_info=True)
        return race.outcome()

    def _resolve_container(self, locator: str) -> ContentNode | None:
        if not locator:
            return None
        for strategy in self._strategies:
            node = self._guarded(lambda: strategy(self._document, locator))
            if node is not None:
                return node
        return None

    def _wait_for_container(self, locator: str, budget_ms: int) -> ContentNode:
        deadline = self._clock() + max(0, budget_ms) / 1000.0
        while True:
            container = self._resolve_container(locator)
            if container is not None:
                return container
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ContainerNotFound(f"container {locator!r} not found within {budget_ms}ms")
            self._sleep(min(self._poll_seconds, remaining))

    def _scan(self, container: ContentNode, keywords: Sequence[str]) -> str | None:
        for node in container.select(TEXT_BEARING_SELECTOR):
            text = normalize_text(node.text())
            if not text:
                continue
            keyword = first_keyword(text, keywords)
            if keyword is not None:
                return keyword
        return first_keyword(normalize_text(container.text()), keywords)

    @staticmethod
    def _guarded(action):
        try:
            return action()
        except MatchInvocationFailure:
            raise
        except Exception as exc:
            raise MatchInvocationFailure(f"live content inspection failed: {exc}") from exc
