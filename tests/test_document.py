from __future__ import annotations

from pathlib import Path

from fakes import CONTAINER_ID, page_html
from pagewatcher.document import SoupDocument


def test_lookup_by_id_and_selector() -> None:
    document = SoupDocument(page_html("Priority: 2 - High"))

    by_id = document.get_element_by_id(CONTAINER_ID)
    by_selector = document.select_one(f"#{CONTAINER_ID} td.vt")

    assert by_id is not None
    assert "2 - High" in by_id.text()
    assert by_selector is not None
    assert by_selector.text() == "Priority: 2 - High"
    assert document.get_element_by_id("missing") is None
    assert document.select_one("[[[") is None


def test_node_select_returns_descendants_in_document_order() -> None:
    document = SoupDocument(
        "<div id='c'><span>first</span><div><span>second</span></div></div>"
    )
    container = document.get_element_by_id("c")
    assert container is not None

    texts = [node.text() for node in container.select("span")]

    assert texts == ["first", "second"]
    assert container.select("[[[") == []


def test_mutation_notifies_only_enclosing_subscribers() -> None:
    document = SoupDocument(page_html())
    container = document.get_element_by_id(CONTAINER_ID)
    header = document.get_element_by_id("header")
    assert container is not None and header is not None
    seen: list[str] = []

    container.subscribe(lambda: seen.append("container"))
    header.subscribe(lambda: seen.append("header"))

    assert document.append_html("table", "<tr><td>new</td></tr>") is True
    assert seen == ["container"]


def test_unsubscribe_stops_notifications() -> None:
    document = SoupDocument(page_html())
    container = document.get_element_by_id(CONTAINER_ID)
    assert container is not None
    seen: list[int] = []

    unsubscribe = container.subscribe(lambda: seen.append(1))
    unsubscribe()
    unsubscribe()
    document.append_html("table", "<tr><td>new</td></tr>")

    assert seen == []
    assert document.subscriber_count() == 0


def test_replace_html_notifies_everyone() -> None:
    document = SoupDocument(page_html())
    container = document.get_element_by_id(CONTAINER_ID)
    assert container is not None
    seen: list[int] = []
    container.subscribe(lambda: seen.append(1))

    document.replace_html(page_html("1 - Critical"))

    assert seen == [1]
    refreshed = document.get_element_by_id(CONTAINER_ID)
    assert refreshed is not None
    assert "1 - Critical" in refreshed.text()


def test_append_html_with_unknown_selector_returns_false() -> None:
    document = SoupDocument(page_html())

    assert document.append_html("#nowhere", "<span>x</span>") is False


def test_from_file(tmp_path: Path) -> None:
    path = tmp_path / "page.html"
    path.write_text(page_html("saved 2 - High"), encoding="utf-8")

    document = SoupDocument.from_file(path)
    node = document.select_one("td.vt")

    assert node is not None
    assert node.text() == "saved 2 - High"
