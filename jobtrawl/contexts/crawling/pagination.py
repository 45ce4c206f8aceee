"""
Next-page resolution for listing pages.

Strategies run in order and the first usable URL wins:
1. state:    the embedded state payload knows the page count
2. next:     an anchor labelled "next" (text, rel or aria-label)
3. numbered: an anchor whose page parameter is exactly current + 1
4. manual:   set the page parameter on the current URL (always succeeds)

A candidate that carries a page number not greater than the current one is
ignored so that a stale "next" link cannot send the crawl backwards.
"""

import re
from typing import Callable, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin

from bs4 import BeautifulSoup
from loguru import logger

from jobtrawl.contexts.crawling.extraction import StatePayload, extract_state_payload
from jobtrawl.contexts.crawling.links import get_page_number, has_page_number, set_page_number
from jobtrawl.contexts.crawling.parsing import anchors

NEXT_LABEL = re.compile(r"^\s*(next(\s+page)?|[›»>])\s*[›»>]?\s*$", re.IGNORECASE)

Strategy = Callable[[str, BeautifulSoup, int, Optional[StatePayload]], Optional[str]]


def derived_page_number(url: str, current_page: int) -> int:
    """Page number a URL points at; URLs without a page parameter count as the following page."""
    return get_page_number(url, default=current_page + 1) if has_page_number(url) else current_page + 1


def _usable_href(href: Optional[str]) -> bool:
    if not href:
        return False
    href = href.strip()
    return bool(href) and not href.startswith("#") and not href.lower().startswith("javascript:")


def _absolute(listing_url: str, href: str) -> str:
    return urldefrag(urljoin(listing_url, href.strip()))[0]


def from_state(listing_url: str, document: BeautifulSoup, current_page: int, state: Optional[StatePayload]) -> Optional[str]:
    if state is None:
        return None
    if state.page_count is not None:
        if current_page < state.page_count:
            return set_page_number(listing_url, current_page + 1)
        return None
    if state.next_url and _usable_href(state.next_url):
        return _absolute(listing_url, state.next_url)
    return None


def _labelled_next(link) -> bool:
    rel = link.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    if "next" in [r.lower() for r in rel]:
        return True
    aria = link.get("aria-label") or ""
    if "next" in aria.lower():
        return True
    return NEXT_LABEL.match(link.get_text(" ")) is not None


def from_next_anchor(listing_url: str, document: BeautifulSoup, current_page: int, state: Optional[StatePayload]) -> Optional[str]:
    for link in anchors(document):
        if _labelled_next(link) and _usable_href(link.get("href")):
            return _absolute(listing_url, link["href"])
    return None


def from_numbered_anchor(listing_url: str, document: BeautifulSoup, current_page: int, state: Optional[StatePayload]) -> Optional[str]:
    wanted = current_page + 1
    for link in anchors(document):
        if not _usable_href(link.get("href")):
            continue
        url = _absolute(listing_url, link["href"])
        if has_page_number(url) and get_page_number(url) == wanted:
            return url
    return None


def manual(listing_url: str, document: BeautifulSoup, current_page: int, state: Optional[StatePayload]) -> Optional[str]:
    return set_page_number(listing_url, current_page + 1)


STRATEGIES: List[Tuple[str, Strategy]] = [
    ("state", from_state),
    ("next", from_next_anchor),
    ("numbered", from_numbered_anchor),
    ("manual", manual),
]


def resolve_next_page(
    listing_url: str,
    document: BeautifulSoup,
    current_page: int,
    state: Optional[StatePayload] = None,
) -> Optional[str]:
    """
    URL of the listing page after ``current_page``.

    Args:
        listing_url: URL of the page just processed
        document: Its parsed body
        current_page: Its page number
        state: Pre-extracted state payload (read from ``document`` when omitted)
    """
    if state is None:
        state = extract_state_payload(document, listing_url)

    for name, strategy in STRATEGIES:
        candidate = strategy(listing_url, document, current_page, state)
        if not candidate:
            continue
        if derived_page_number(candidate, current_page) <= current_page:
            logger.debug(f"Ignoring {name} pagination candidate {candidate} (not past page {current_page})")
            continue
        logger.debug(f"Next page via {name}: {candidate}")
        return candidate
    return None
