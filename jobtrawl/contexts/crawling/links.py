"""
Link classification and page-number URL helpers.

Job detail pages look like ``/job/<title-slug>/<company-slug>-job<id>`` and
search result (listing) pages live under ``/jobs/``. Detail is checked first so
a detail URL is never mistaken for a listing page.
"""

import re
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

JOB_PATH_PREFIX = "/job/"
PAGE_PARAM = "page"

DETAIL_PATTERN = re.compile(r"/job/[^/?#]+/[^/?#]+-job\d+")
LISTING_PATTERN = re.compile(r"/jobs(/|$)")


class PageClass(str, Enum):
    LISTING = "listing"
    DETAIL = "detail"
    OTHER = "other"


def _path_of(url: str) -> str:
    return urlparse(url).path or ""


def classify(url: str) -> PageClass:
    """Map a URL (absolute or path-only) to its page class."""
    path = _path_of(url)
    if DETAIL_PATTERN.search(path):
        return PageClass.DETAIL
    if LISTING_PATTERN.search(path):
        return PageClass.LISTING
    return PageClass.OTHER


def is_detail_url(url: str) -> bool:
    return classify(url) is PageClass.DETAIL


def get_page_number(url: str, default: int = 1) -> int:
    """Read the page query parameter, falling back to ``default`` when absent or garbled."""
    for key, value in parse_qsl(urlparse(url).query, keep_blank_values=True):
        if key == PAGE_PARAM:
            try:
                return int(value)
            except ValueError:
                return default
    return default


def has_page_number(url: str) -> bool:
    return any(key == PAGE_PARAM for key, _ in parse_qsl(urlparse(url).query, keep_blank_values=True))


def set_page_number(url: str, page: int) -> str:
    """Return ``url`` with its page query parameter set to ``page`` (other params kept in order)."""
    parsed = urlparse(url)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    replaced = False
    updated = []
    for key, value in params:
        if key == PAGE_PARAM:
            if not replaced:
                updated.append((key, str(page)))
                replaced = True
            continue
        updated.append((key, value))
    if not replaced:
        updated.append((PAGE_PARAM, str(page)))
    return urlunparse(parsed._replace(query=urlencode(updated)))


def same_host(url: str, other: Optional[str]) -> bool:
    if not other:
        return False
    return urlparse(url).netloc.lower() == urlparse(other).netloc.lower()
