"""Shared fixtures: HTML builders, a scripted transport and an in-memory sink."""

import json
import random
import threading
from typing import Dict, List, Optional

import pytest

from jobtrawl.contexts.crawling.config import CrawlConfig, DelayRange, normalize_config
from jobtrawl.contexts.crawling.links import set_page_number
from jobtrawl.contexts.crawling.models import JobRecord
from jobtrawl.contexts.crawling.orchestration import Crawler
from jobtrawl.contexts.crawling.requests import FetchResult
from jobtrawl.contexts.storage.sinks import Sink

BASE_URL = "https://jobs.example.com"
START_URL = f"{BASE_URL}/jobs/admin?page=1"

FILLER = (
    "<p>Key responsibilities include keeping the office running, coordinating diaries and "
    "supporting the wider team with day to day administration. Requirements: strong "
    "organisational skills and at least two years of experience in a similar role.</p>"
)


def page_url(page: int, url: str = START_URL) -> str:
    return set_page_number(url, page)


def job_url(n: int) -> str:
    return f"{BASE_URL}/job/admin-assistant-{n}/acme-ltd-job{1000 + n}"


def job_card(n: int, title: Optional[str] = None, company: str = "Acme Ltd", location: str = "London") -> str:
    path = job_url(n)[len(BASE_URL):]
    return (
        f'<li class="job-card"><a href="{path}">{title or f"Admin Assistant {n}"}</a>'
        f'<span class="company">{company}</span><span class="location">{location}</span>'
        f'<span class="salary">£25,000 per annum</span><span class="posted">2 days ago</span></li>'
    )


def listing_page(job_numbers: List[int], pagination: str = "", cards: Optional[List[str]] = None) -> str:
    items = cards if cards is not None else [job_card(n) for n in job_numbers]
    return (
        "<html><head><title>Admin jobs</title></head><body>"
        f"<ul class=\"results\">{''.join(items)}</ul>{pagination}</body></html>"
    )


def detail_page(
    title: str = "Admin Assistant",
    company: str = "Acme Ltd",
    location: str = "London",
    employment_type: str = "FULL_TIME",
    json_ld: bool = True,
) -> str:
    posting = {
        "@context": "https://schema.org",
        "@type": "JobPosting",
        "title": title,
        "hiringOrganization": {"@type": "Organization", "name": company},
        "jobLocation": {"@type": "Place", "address": {"addressLocality": location}},
        "datePosted": "2024-05-01",
        "employmentType": employment_type,
        "description": FILLER,
    }
    script = f'<script type="application/ld+json">{json.dumps(posting)}</script>' if json_ld else ""
    return (
        f"<html><head><title>{title}</title>{script}</head><body>"
        f"<h1>{title}</h1><div class=\"company\">{company}</div>"
        f"<div class=\"job-description\">{FILLER}{FILLER}</div></body></html>"
    )


class FakeTransport:
    """
    Scripted transport. ``pages`` maps URL -> (status, body), an exception to raise,
    or a list of those served in order (the last one repeats).
    """

    def __init__(self, pages: Optional[Dict[str, object]] = None, default=(404, "")):
        self.pages = dict(pages or {})
        self.default = default
        self.calls: List[str] = []
        self.headers: List[dict] = []
        self._lock = threading.Lock()

    def fetch(self, url, headers=None, timeout=None, identity=None):
        with self._lock:
            self.calls.append(url)
            self.headers.append(dict(headers or {}))
            response = self.pages.get(url, self.default)
            if isinstance(response, list):
                response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        status, body = response
        return FetchResult(status=status, body=body, final_url=url)

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)


class ListSink(Sink):
    def __init__(self):
        self.records: List[JobRecord] = []

    def append(self, record: JobRecord) -> None:
        self.records.append(record)

    @property
    def urls(self) -> List[str]:
        return [r.job_url for r in self.records]


def no_sleep(seconds: float) -> None:
    pass


def fast_config(tmp_path=None, **overrides) -> CrawlConfig:
    """Normalized config with every delay at zero and no progress bar."""
    zero = DelayRange(0.0, 0.0)
    values = dict(
        start_urls=[START_URL],
        target_record_count=5,
        max_pages=2,
        navigation_delay=zero,
        listing_delay=zero,
        detail_delay=zero,
        block_delay=zero,
        backoff_base=0.0,
        backoff_cap=0.0,
        show_progress=False,
        output=str(tmp_path / "jobs.jsonl") if tmp_path is not None else "outs/test-jobs.jsonl",
    )
    values.update(overrides)
    return normalize_config(CrawlConfig(**values))


def make_crawler(config: CrawlConfig, transport: FakeTransport, sink: Optional[Sink] = None) -> Crawler:
    return Crawler(config, transport=transport, sink=sink or ListSink(), sleep=no_sleep, rng=random.Random(7))


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def config(tmp_path):
    return fast_config(tmp_path)
