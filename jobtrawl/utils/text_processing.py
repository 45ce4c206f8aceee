"""
Text processing utilities for jobtrawl.

Small helpers for turning scraped HTML fragments into clean single-line text.
"""

import re
from typing import Iterable, Optional, Pattern, Union

from bs4 import BeautifulSoup

_WHITESPACE = re.compile(r"\s+")


def normalize_whitespace(text: Optional[str]) -> str:
    """
    Collapse runs of whitespace (including newlines and nbsp) to single spaces and trim.

    Returns an empty string for None.
    """
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.replace("\xa0", " ")).strip()


def html_to_text(html_fragment: Optional[str]) -> str:
    """
    Convert an HTML fragment to normalized plain text.

    Block elements are separated by spaces so that "<p>a</p><p>b</p>" reads "a b",
    not "ab". JSON-LD descriptions are frequently HTML-escaped, BeautifulSoup
    handles both forms.
    """
    if not html_fragment:
        return ""
    soup = BeautifulSoup(html_fragment, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return normalize_whitespace(soup.get_text(" "))


def contains_keyword(
    text: Optional[str],
    keywords: Union[str, Pattern[str], Iterable[str]],
) -> bool:
    """
    Case-insensitive check for any keyword in text.

    Args:
        text: Text to search
        keywords: A compiled pattern, a regex string, or an iterable of literal keywords
    """
    if not text:
        return False
    if isinstance(keywords, str):
        return re.search(keywords, text, re.IGNORECASE) is not None
    if isinstance(keywords, re.Pattern):
        return keywords.search(text) is not None
    lowered = text.lower()
    return any(k.lower() in lowered for k in keywords)


def clean_optional(text: Optional[str]) -> Optional[str]:
    """normalize_whitespace, but keep "nothing there" as None."""
    cleaned = normalize_whitespace(text)
    return cleaned or None
