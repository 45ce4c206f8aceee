"""
Data model for a crawl run.

- CrawlTarget: one unit of frontier work (a URL plus what we know about it)
- JobSeed: partial job data captured from a listing page, used only as a fallback
- JobRecord: the output row written to the sink
- CrawlSummary: the end-of-run report
"""

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Optional

from jobtrawl.contexts.crawling.errors import IncompleteRecordError
from jobtrawl.contexts.crawling.links import PageClass

DEFAULT_REFERER = "https://www.google.com/"


@dataclass(frozen=True)
class JobSeed:
    """Cheap listing-page snapshot of a job. Every field may be missing."""

    title: Optional[str] = None
    company: Optional[str] = None
    location: Optional[str] = None
    salary: Optional[str] = None
    date_posted: Optional[str] = None
    description_html: Optional[str] = None
    description_text: Optional[str] = None

    @property
    def has_title(self) -> bool:
        return bool(self.title and self.title.strip())


@dataclass(frozen=True)
class CrawlTarget:
    url: str
    page_class: PageClass
    seed: Optional[JobSeed] = None
    referer: str = DEFAULT_REFERER
    page_number: int = 1
    # Position of a listing page within its pagination chain (start URL is 1)
    page_ordinal: int = 1
    requeue_attempt: int = 0
    retry_count: int = 0

    @property
    def is_listing(self) -> bool:
        return self.page_class is PageClass.LISTING

    @property
    def is_detail(self) -> bool:
        return self.page_class is PageClass.DETAIL

    def retried(self) -> "CrawlTarget":
        return replace(self, retry_count=self.retry_count + 1)

    def requeued(self) -> "CrawlTarget":
        return replace(self, requeue_attempt=self.requeue_attempt + 1, retry_count=0)


@dataclass(frozen=True)
class JobRecord:
    title: Optional[str]
    company: Optional[str]
    location: Optional[str]
    salary: Optional[str]
    date_posted: Optional[str]
    job_type: Optional[str]
    job_category: Optional[str]
    description_html: Optional[str]
    description_text: Optional[str]
    job_url: Optional[str]

    @classmethod
    def from_seed(cls, seed: JobSeed, job_url: str, with_description: bool = True) -> "JobRecord":
        """
        Build a best-effort record from listing data alone (no detail-page fields).

        Pass ``with_description=False`` when the detail page could not be read, so the
        listing snippet is not stored as if it were the description.
        """
        return cls(
            title=seed.title,
            company=seed.company,
            location=seed.location,
            salary=seed.salary,
            date_posted=seed.date_posted,
            job_type=None,
            job_category=None,
            description_html=seed.description_html if with_description else None,
            description_text=seed.description_text if with_description else None,
            job_url=job_url,
        )

    @property
    def is_valid(self) -> bool:
        return bool(self.title and self.title.strip() and self.job_url and self.job_url.strip())

    def validate(self) -> "JobRecord":
        if not self.is_valid:
            raise IncompleteRecordError(
                f"Record for {self.job_url or '<no url>'} is missing {'title' if self.job_url else 'url'}"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def field_names(cls) -> list:
        return [f.name for f in fields(cls)]


@dataclass
class CrawlSummary:
    saved_count: int = 0
    pages_visited: int = 0
    unique_job_urls_seen: int = 0
    unique_page_urls_seen: int = 0
    failed_url_count: int = 0
    blocked_responses: int = 0
    stop_reason: Optional[str] = None
    status: str = "ok"
    time_elapsed: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
