"""
Extraction engine for listing and detail pages.

Listing pages are read in two tiers:
1. Structured state: an inline script assigning the search-results state object
   (``window.__PRELOADED_STATE__ = {...}`` or a ``__NEXT_DATA__`` JSON script).
   Gives canonical URLs and cleaner fields, and may carry the page count.
2. DOM fallback: anchors pointing at job detail paths, with seed fields picked
   from the surrounding card by ordered selector lists.

Detail pages resolve every field independently: JSON-LD JobPosting, then the
listing seed, then DOM selectors. Description has its own chain ending in a
keyword-guided scan of likely containers.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup
from bs4.element import Tag
from loguru import logger

from jobtrawl.contexts.crawling.errors import MalformedStructuredDataError
from jobtrawl.contexts.crawling.links import JOB_PATH_PREFIX, PageClass, classify
from jobtrawl.contexts.crawling.models import JobRecord, JobSeed
from jobtrawl.contexts.crawling.parsing import (
    anchors,
    find_structured_data,
    select_first_matching_text,
    try_in_order,
)
from jobtrawl.utils.text_processing import clean_optional, contains_keyword, html_to_text

# -----------------------------------------------------------------------------
# Selector lists (order matters: first non-empty match wins)
# -----------------------------------------------------------------------------
CARD_CONTAINERS = ["article", "li", "div"]

SEED_SELECTORS: Dict[str, List[str]] = {
    "company": [
        'a[href*="/jobs/"]',
        ".company",
        '[data-at="job-item-company-name"]',
        'span:-soup-contains("Ltd")',
        'span:-soup-contains("Limited")',
    ],
    "location": [
        ".location",
        '[data-at="job-item-location"]',
        'span:-soup-contains(",")',
        'span:-soup-contains("London")',
        'span:-soup-contains("Manchester")',
    ],
    "salary": [
        ".salary",
        '[data-at="job-item-salary-info"]',
        'span:-soup-contains("£")',
        'span:-soup-contains("per")',
    ],
    "date_posted": [
        ".posted",
        "time",
        '[data-at="job-item-timeago"]',
        'span:-soup-contains("ago")',
        'span:-soup-contains("hours")',
        'span:-soup-contains("days")',
    ],
}

DETAIL_SELECTORS: Dict[str, List[str]] = {
    "title": ["h1", ".job-title", '[data-automation="job-detail-title"]', '[data-at="header-job-title"]'],
    "company": [
        '[data-automation="advertiser-name"]',
        ".company",
        '[data-at="metadata-company-name"]',
        'a[href*="/jobs/"]',
    ],
    "location": [
        ".location",
        '[data-automation="job-detail-location"]',
        '[data-at="metadata-location"]',
        'span:-soup-contains(",")',
    ],
    "salary": [
        ".salary",
        '[data-automation="job-detail-salary"]',
        '[data-at="metadata-salary"]',
        'span:-soup-contains("£")',
    ],
    "date_posted": [".posted", "time", '[data-at="metadata-online-date"]', 'span:-soup-contains("ago")'],
    "job_type": [
        ".job-type",
        '[data-automation="job-detail-worktype"]',
        '[data-at="metadata-work-type"]',
        'span:-soup-contains("Full-time")',
        'span:-soup-contains("Part-time")',
    ],
    "job_category": ['.breadcrumb a', 'nav[aria-label="breadcrumb"] a', 'meta[name="category"]', "nav a"],
}

PRIMARY_DESCRIPTION_SELECTORS = [".job-description", '[data-at="job-ad-content"]']
CANDIDATE_DESCRIPTION_SELECTOR = '[class*="description"], [id*="description"], section, article'
DESCRIPTION_MIN_CHARS = 200
DESCRIPTION_KEYWORDS = re.compile(r"responsibilities|requirements|skills|experience", re.IGNORECASE)

# -----------------------------------------------------------------------------
# Blocked page detection
# -----------------------------------------------------------------------------
BLOCKED_MIN_BYTES = 500
BLOCKED_SCAN_CHARS = 1000
BLOCKING_KEYWORDS = re.compile(r"access denied|blocked|captcha|\berror\b", re.IGNORECASE)

# -----------------------------------------------------------------------------
# Structured state payload
# -----------------------------------------------------------------------------
STATE_ASSIGNMENT = re.compile(r"window\.(__[A-Za-z0-9_]+__)\s*=\s*")
NEXT_DATA_SCRIPT_ID = "__NEXT_DATA__"

ITEM_URL_KEYS = ("url", "jobUrl", "jobDetailUrl", "href", "link")
ITEM_FIELD_KEYS: Dict[str, tuple] = {
    "title": ("title", "jobTitle", "name"),
    "company": ("companyName", "company", "employer", "hiringOrganization"),
    "location": ("location", "locationName", "jobLocation"),
    "salary": ("salary", "salaryText", "salaryDescription"),
    "date_posted": ("datePosted", "postedDate", "date"),
    "description_html": ("textSnippet", "snippet", "description"),
}
PAGE_COUNT_KEYS = ("pageCount", "totalPages", "numberOfPages")
CURRENT_PAGE_KEYS = ("currentPage", "pageNumber")
NEXT_URL_KEYS = ("nextPageUrl", "nextUrl", "nextPage")


@dataclass(frozen=True)
class ListingCandidate:
    url: str
    seed: JobSeed


@dataclass(frozen=True)
class StatePayload:
    items: List[dict] = field(default_factory=list)
    page_count: Optional[int] = None
    current_page: Optional[int] = None
    next_url: Optional[str] = None


@dataclass
class ListingExtraction:
    candidates: List[ListingCandidate] = field(default_factory=list)
    state: Optional[StatePayload] = None
    tier: str = "none"


# =============================================================================
# Blocked page detection
# =============================================================================
def is_blocked_page(body: Optional[Union[str, bytes]]) -> bool:
    """
    True when a detail body is absent, suspiciously short, or opens with a block/error marker.
    """
    if not body:
        return True
    raw = body if isinstance(body, bytes) else body.encode("utf-8", errors="ignore")
    if len(raw) < BLOCKED_MIN_BYTES:
        return True
    head = body[:BLOCKED_SCAN_CHARS]
    if isinstance(head, bytes):
        head = head.decode("utf-8", errors="ignore")
    return BLOCKING_KEYWORDS.search(head) is not None


# =============================================================================
# Structured state tier
# =============================================================================
def _decode_assignment(script_text: str) -> Optional[Any]:
    match = STATE_ASSIGNMENT.search(script_text)
    if not match:
        return None
    try:
        data, _ = json.JSONDecoder().raw_decode(script_text, match.end())
    except ValueError as e:
        raise MalformedStructuredDataError(f"{match.group(1)}: {e}") from e
    return data


def _iter_state_objects(document: BeautifulSoup, source: str) -> Iterable[Any]:
    for script in document.find_all("script"):
        text = script.string or script.get_text()
        if not text or not text.strip():
            continue
        try:
            if script.get("id") == NEXT_DATA_SCRIPT_ID:
                try:
                    yield json.loads(text)
                except ValueError as e:
                    raise MalformedStructuredDataError(f"{NEXT_DATA_SCRIPT_ID}: {e}") from e
            else:
                data = _decode_assignment(text)
                if data is not None:
                    yield data
        except MalformedStructuredDataError as e:
            logger.debug(f"Malformed state payload on {source}: {e}")


def _walk(obj: Any) -> Iterable[Any]:
    """Depth-first walk over nested dicts/lists (containers only)."""
    stack = [obj]
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, dict):
            stack.extend(reversed(list(current.values())))
        elif isinstance(current, list):
            stack.extend(reversed(current))


def _first_key(obj: Any, keys: Iterable[str]) -> Any:
    keys = tuple(keys)
    for node in _walk(obj):
        if isinstance(node, dict):
            for key in keys:
                if key in node and node[key] not in (None, ""):
                    return node[key]
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _item_url(item: dict) -> Optional[str]:
    for key in ITEM_URL_KEYS:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _looks_like_job_item(item: Any, source: str) -> bool:
    if not isinstance(item, dict):
        return False
    url = _item_url(item)
    return bool(url) and classify(urljoin(source, url)) is PageClass.DETAIL


def _find_items(obj: Any, source: str) -> List[dict]:
    for node in _walk(obj):
        if isinstance(node, list) and node and any(_looks_like_job_item(i, source) for i in node):
            return [i for i in node if isinstance(i, dict)]
    return []


def extract_state_payload(document: BeautifulSoup, source: str = "") -> Optional[StatePayload]:
    """
    Read the embedded search-results state, if the page carries one.

    Returns None when no script holds decodable state with items or a page count.
    """
    for data in _iter_state_objects(document, source):
        items = _find_items(data, source)
        page_count = _as_int(_first_key(data, PAGE_COUNT_KEYS))
        if not items and page_count is None:
            continue
        next_url = _first_key(data, NEXT_URL_KEYS)
        return StatePayload(
            items=items,
            page_count=page_count,
            current_page=_as_int(_first_key(data, CURRENT_PAGE_KEYS)),
            next_url=next_url if isinstance(next_url, str) else None,
        )
    return None


def _scalar_text(value: Any) -> Optional[str]:
    """Flatten a state/JSON-LD value (str, number, {name: ...}, [..]) to text."""
    if value is None:
        return None
    if isinstance(value, (str, int, float)):
        return clean_optional(str(value))
    if isinstance(value, dict):
        for key in ("name", "displayName", "text", "value", "addressLocality", "city"):
            if key in value:
                return _scalar_text(value[key])
        return None
    if isinstance(value, list):
        parts = [p for p in (_scalar_text(v) for v in value) if p]
        return ", ".join(parts) or None
    return None


def _seed_from_item(item: dict) -> JobSeed:
    values = {}
    for name, keys in ITEM_FIELD_KEYS.items():
        values[name] = try_in_order([lambda k=k: item.get(k) for k in keys])
    description_html = values.pop("description_html")
    description_html = description_html if isinstance(description_html, str) else None
    return JobSeed(
        title=_scalar_text(values["title"]),
        company=_scalar_text(values["company"]),
        location=_scalar_text(values["location"]),
        salary=_scalar_text(values["salary"]),
        date_posted=_scalar_text(values["date_posted"]),
        description_html=description_html,
        description_text=html_to_text(description_html) or None,
    )


def _candidates_from_state(state: StatePayload, source: str) -> List[ListingCandidate]:
    candidates = []
    for item in state.items:
        url = _item_url(item)
        if not url:
            continue
        absolute = urldefrag(urljoin(source, url))[0]
        if classify(absolute) is not PageClass.DETAIL:
            continue
        candidates.append(ListingCandidate(url=absolute, seed=_seed_from_item(item)))
    return candidates


# =============================================================================
# DOM tier
# =============================================================================
def _card_for(link: Tag) -> Tag:
    return link.find_parent(CARD_CONTAINERS) or link.parent


def seed_from_card(link: Tag) -> JobSeed:
    """Seed fields from the card around a job link; each field takes its first matching selector."""
    card = _card_for(link)
    return JobSeed(
        title=clean_optional(link.get_text(" ")),
        company=select_first_matching_text(card, SEED_SELECTORS["company"]),
        location=select_first_matching_text(card, SEED_SELECTORS["location"]),
        salary=select_first_matching_text(card, SEED_SELECTORS["salary"]),
        date_posted=select_first_matching_text(card, SEED_SELECTORS["date_posted"]),
    )


def _candidates_from_dom(document: BeautifulSoup, source: str) -> List[ListingCandidate]:
    candidates = []
    for link in anchors(document):
        absolute = urldefrag(urljoin(source, link["href"].strip()))[0]
        if not urlparse(absolute).path.startswith(JOB_PATH_PREFIX):
            continue
        if classify(absolute) is not PageClass.DETAIL:
            continue
        candidates.append(ListingCandidate(url=absolute, seed=seed_from_card(link)))
    return candidates


def extract_listing(
    document: BeautifulSoup,
    source: str,
    is_known: Optional[Callable[[str], bool]] = None,
) -> ListingExtraction:
    """
    Candidate detail links (with seeds) from a listing page.

    Args:
        document: Parsed listing page
        source: URL the page was fetched from (base for relative links)
        is_known: Predicate for URLs already seen or failed; those are dropped

    Returns:
        ListingExtraction with unique candidates in page order, the state payload
        (if any) and which tier produced the candidates.
    """
    state = extract_state_payload(document, source)
    tier = "none"

    candidates = _candidates_from_state(state, source) if state else []
    if candidates:
        tier = "state"
    else:
        candidates = _candidates_from_dom(document, source)
        if candidates:
            tier = "dom"

    unique = []
    on_page = set()
    for candidate in candidates:
        if candidate.url in on_page:
            continue
        on_page.add(candidate.url)
        if is_known is not None and is_known(candidate.url):
            continue
        unique.append(candidate)

    return ListingExtraction(candidates=unique, state=state, tier=tier)


# =============================================================================
# Detail pages
# =============================================================================
def _salary_text(base_salary: Any) -> Optional[str]:
    if not isinstance(base_salary, dict):
        return _scalar_text(base_salary)
    value = base_salary.get("value")
    if isinstance(value, dict):
        if value.get("value") not in (None, ""):
            return _scalar_text(value["value"])
        low, high = value.get("minValue"), value.get("maxValue")
        if low is not None or high is not None:
            span = "-".join(str(v) for v in (low, high) if v is not None)
            unit = value.get("unitText")
            return f"{span} {unit}".strip() if unit else span
        return None
    return _scalar_text(value)


def _location_text(job_location: Any) -> Optional[str]:
    if isinstance(job_location, list):
        job_location = job_location[0] if job_location else None
    if isinstance(job_location, dict):
        address = job_location.get("address")
        if isinstance(address, dict):
            return _scalar_text(address.get("addressLocality")) or _scalar_text(address.get("addressRegion"))
        return _scalar_text(address)
    return _scalar_text(job_location)


def job_posting_fields(posting: Optional[dict]) -> Dict[str, Optional[str]]:
    """Map a JSON-LD JobPosting object onto record field names."""
    if not posting:
        return {}
    description = posting.get("description")
    return {
        "title": _scalar_text(posting.get("title") or posting.get("name")),
        "company": _scalar_text(posting.get("hiringOrganization")),
        "location": _location_text(posting.get("jobLocation")),
        "date_posted": _scalar_text(posting.get("datePosted")),
        "description_html": description if isinstance(description, str) and description.strip() else None,
        "salary": _salary_text(posting.get("baseSalary")),
        "job_type": _scalar_text(posting.get("employmentType")),
        "job_category": _scalar_text(posting.get("occupationalCategory") or posting.get("industry")),
    }


def _find_description_html(document: BeautifulSoup) -> Optional[str]:
    for selector in PRIMARY_DESCRIPTION_SELECTORS:
        node = document.select_one(selector)
        if node is not None:
            return node.decode_contents()

    for node in document.select(CANDIDATE_DESCRIPTION_SELECTOR):
        text = node.get_text(" ")
        if len(text) > DESCRIPTION_MIN_CHARS and contains_keyword(text, DESCRIPTION_KEYWORDS):
            return node.decode_contents()
    return None


def extract_job_record(document: BeautifulSoup, url: str, seed: Optional[JobSeed] = None) -> JobRecord:
    """
    Build a JobRecord from a detail page.

    Every field is resolved on its own: JSON-LD JobPosting, then the listing seed,
    then the DOM selector list. The record is returned even if incomplete; callers
    decide whether to keep it (``JobRecord.is_valid``).
    """
    structured = job_posting_fields(find_structured_data(document, "JobPosting", source=url))
    seed = seed or JobSeed()

    def resolve(name: str, seeded: bool = True) -> Optional[str]:
        return try_in_order([
            lambda: structured.get(name),
            lambda: getattr(seed, name) if seeded else None,
            lambda: select_first_matching_text(document, DETAIL_SELECTORS[name]),
        ])

    description_html = structured.get("description_html") or _find_description_html(document)

    return JobRecord(
        title=resolve("title"),
        company=resolve("company"),
        location=resolve("location"),
        salary=resolve("salary"),
        date_posted=resolve("date_posted"),
        job_type=resolve("job_type", seeded=False),
        job_category=resolve("job_category", seeded=False),
        description_html=description_html,
        description_text=html_to_text(description_html) or None,
        job_url=url,
    )
