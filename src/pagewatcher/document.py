from __future__ import annotations

import logging
from pathlib import Path
from threading import RLock
from typing import Callable
from uuid import uuid4

from bs4 import BeautifulSoup, Tag

LOGGER = logging.getLogger(__name__)

HTML_PARSER = "html.parser"


def _contains(ancestor: Tag, node: Tag) -> bool:
    # Tag.__eq__ compares markup, so identity is checked explicitly.
    if ancestor is node:
        return True
    return any(parent is ancestor for parent in node.parents)


class SoupNode:
    def __init__(self, document: "SoupDocument", tag: Tag) -> None:
        self._document = document
        self._tag = tag

    @property
    def tag(self) -> Tag:
        return self._tag

    def text(self) -> str:
        with self._document.lock:
            return self._tag.get_text()

    def select(self, selector: str) -> list["SoupNode"]:
        with self._document.lock:
            try:
                found = self._tag.select(selector)
            except Exception:
                LOGGER.debug("Invalid selector %r", selector, exc_info=True)
                return []
            return [SoupNode(self._document, item) for item in found]

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self._document.subscribe(self._tag, callback)


class SoupDocument:
    """In-process live document over parsed HTML.

    Mutations made through :meth:`mutate` or :meth:`replace_html` notify the
    subscribers whose node is the changed node or one of its ancestors, which
    is the same scoping a subtree mutation observer gives in a browser.
    """

    def __init__(self, html: str = "") -> None:
        self.lock = RLock()
        self._soup = BeautifulSoup(html, HTML_PARSER)
        self._subscribers: dict[str, tuple[Tag, Callable[[], None]]] = {}

    @classmethod
    def from_file(cls, path: Path) -> "SoupDocument":
        return cls(path.read_text(encoding="utf-8", errors="replace"))

    def get_element_by_id(self, element_id: str) -> SoupNode | None:
        if not element_id:
            return None
        with self.lock:
            tag = self._soup.find(id=element_id)
            if not isinstance(tag, Tag):
                return None
            return SoupNode(self, tag)

    def select_one(self, selector: str) -> SoupNode | None:
        if not selector:
            return None
        with self.lock:
            try:
                tag = self._soup.select_one(selector)
            except Exception:
                LOGGER.debug("Invalid selector %r", selector, exc_info=True)
                return None
            if tag is None:
                return None
            return SoupNode(self, tag)

    def subscribe(self, tag: Tag, callback: Callable[[], None]) -> Callable[[], None]:
        token = uuid4().hex
        with self.lock:
            self._subscribers[token] = (tag, callback)

        def unsubscribe() -> None:
            with self.lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def subscriber_count(self) -> int:
        with self.lock:
            return len(self._subscribers)

    def mutate(self, change: Callable[[BeautifulSoup], Tag | None]) -> None:
        """Apply ``change`` to the tree and notify affected subscribers.

        ``change`` returns the tag it modified, or None when the whole
        document changed.
        """
        with self.lock:
            changed = change(self._soup)
            callbacks = [
                callback
                for tag, callback in self._subscribers.values()
                if changed is None or _contains(tag, changed)
            ]
        for callback in callbacks:
            callback()

    def replace_html(self, html: str) -> None:
        with self.lock:
            self._soup = BeautifulSoup(html, HTML_PARSER)
            callbacks = [callback for _tag, callback in self._subscribers.values()]
        for callback in callbacks:
            callback()

    def append_html(self, selector: str, html: str) -> bool:
        """Append an HTML fragment inside the first element matching ``selector``."""

        def change(soup: BeautifulSoup) -> Tag | None:
            target = soup.select_one(selector)
            if target is None:
                raise LookupError(selector)
            fragment = BeautifulSoup(html, HTML_PARSER)
            for child in list(fragment.contents):
                target.append(child)
            return target

        try:
            self.mutate(change)
        except LookupError:
            return False
        return True
