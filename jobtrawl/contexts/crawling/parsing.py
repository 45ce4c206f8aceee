"""
HTML parsing helpers used by extraction and pagination.

Wraps BeautifulSoup behind the three operations the crawl needs: parse a body,
find a JSON-LD object of a given @type, and pick the first non-empty text from an
ordered selector list.
"""

import json
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar, Union

from bs4 import BeautifulSoup
from bs4.element import Tag
from loguru import logger

from jobtrawl.contexts.crawling.errors import MalformedStructuredDataError
from jobtrawl.utils.text_processing import normalize_whitespace

T = TypeVar("T")

HTML_PARSER = "html.parser"


def parse(body: Optional[Union[str, bytes]]) -> BeautifulSoup:
    """Parse an HTML body into a queryable document (empty document for None)."""
    return BeautifulSoup(body or "", HTML_PARSER)


def try_in_order(extractors: Iterable[Callable[[], Optional[T]]]) -> Optional[T]:
    """
    Run extractors in order and return the first result that is not None or empty.

    Later extractors are never called once one succeeds.
    """
    for extractor in extractors:
        value = extractor()
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def element_text(element: Tag) -> str:
    """Normalized text of an element (meta tags contribute their content attribute)."""
    if element.name == "meta":
        return normalize_whitespace(element.get("content"))
    return normalize_whitespace(element.get_text(" "))


def select_first_matching_text(node: Tag, selectors: Sequence[str]) -> Optional[str]:
    """
    First non-empty trimmed text over an ordered selector list.

    For each selector (in order) the matched elements are scanned in document order;
    the first element with text wins and no further selectors are tried.
    """
    if node is None:
        return None
    for selector in selectors:
        for element in node.select(selector):
            text = element_text(element)
            if text:
                return text
    return None


def _decode_json_block(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise MalformedStructuredDataError(str(e)) from e


def _flatten_json_ld(data: Any) -> Iterator[dict]:
    """Yield candidate objects from a JSON-LD block (handles lists and @graph)."""
    if isinstance(data, list):
        for item in data:
            yield from _flatten_json_ld(item)
    elif isinstance(data, dict):
        yield data
        graph = data.get("@graph")
        if isinstance(graph, list):
            yield from _flatten_json_ld(graph)


def iter_json_ld(document: BeautifulSoup, source: str = "") -> Iterator[dict]:
    """Yield every JSON-LD object in document order, skipping undecodable blocks."""
    for script in document.select('script[type="application/ld+json"]'):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = _decode_json_block(raw.strip())
        except MalformedStructuredDataError as e:
            logger.debug(f"JSON-LD parse error on {source or '<document>'}: {e}")
            continue
        yield from _flatten_json_ld(data)


def _type_matches(item: dict, type_tag: str) -> bool:
    item_type = item.get("@type", item.get("type"))
    if isinstance(item_type, list):
        return type_tag in item_type
    return item_type == type_tag


def find_structured_data(document: BeautifulSoup, type_tag: str, source: str = "") -> Optional[dict]:
    """First JSON-LD object typed ``type_tag`` across all blocks, or None."""
    for item in iter_json_ld(document, source=source):
        if _type_matches(item, type_tag):
            return item
    return None


def anchors(document: Tag) -> List[Tag]:
    return document.select("a[href]") if document is not None else []
