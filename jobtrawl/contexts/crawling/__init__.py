"""
Job crawling domain.

Classifies links, extracts job records from listing and detail pages, follows
pagination and runs the concurrent crawl loop.

The crawl loop itself (Crawler, run_crawl) lives in
jobtrawl.contexts.crawling.orchestration, which also depends on the storage context.
"""

from jobtrawl.contexts.crawling.config import (
    CrawlConfig,
    DelayRange,
    build_start_url,
    load_config,
)
from jobtrawl.contexts.crawling.errors import (
    CrawlError,
    FatalConfigurationError,
    IncompleteRecordError,
    MalformedStructuredDataError,
    TransportError,
)
from jobtrawl.contexts.crawling.links import (
    PageClass,
    classify,
)
from jobtrawl.contexts.crawling.models import (
    CrawlSummary,
    CrawlTarget,
    JobRecord,
    JobSeed,
)

__all__ = [
    # Configuration
    "CrawlConfig",
    "DelayRange",
    "build_start_url",
    "load_config",
    # Data model
    "CrawlSummary",
    "CrawlTarget",
    "JobRecord",
    "JobSeed",
    "PageClass",
    "classify",
    # Errors
    "CrawlError",
    "FatalConfigurationError",
    "IncompleteRecordError",
    "MalformedStructuredDataError",
    "TransportError",
]
