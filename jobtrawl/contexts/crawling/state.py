"""
Shared crawl state: dedup sets, quota counter and the cancellation token.

Workers run concurrently, so every guard check and the mutation it protects
happen under one lock (check-and-insert, check-and-increment). This is what
keeps the run from saving past the quota or dispatching a URL twice.
"""

import threading
from typing import Callable, Optional, Set

from jobtrawl.contexts.crawling.models import CrawlSummary, JobRecord


class CancellationToken:
    """One-way stop signal shared by all workers. In-flight fetches are allowed to finish."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: str) -> bool:
        """Set the token. Returns True only for the call that actually cancelled it."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CrawlState:
    """
    Process-lifetime bookkeeping for one crawl run.

    Invariants:
    - saved_count never decreases and never exceeds target_count
    - a URL in seen_job_urls or failed_urls is never claimed again as a detail target
    - a URL in seen_page_urls is never claimed again as a listing target
    """

    def __init__(self, target_count: int):
        self.target_count = target_count
        self.saved_count = 0
        self.pages_visited = 0
        self.blocked_responses = 0
        self.seen_job_urls: Set[str] = set()
        self.seen_page_urls: Set[str] = set()
        self.failed_urls: Set[str] = set()
        self.saved_job_urls: Set[str] = set()
        self._lock = threading.RLock()

    # ---- quota ----
    @property
    def quota_reached(self) -> bool:
        with self._lock:
            return self.saved_count >= self.target_count

    @property
    def remaining(self) -> int:
        with self._lock:
            return max(0, self.target_count - self.saved_count)

    # ---- detail targets ----
    def is_known_job(self, url: str) -> bool:
        with self._lock:
            return url in self.seen_job_urls or url in self.failed_urls

    def can_enqueue_detail(self, url: str) -> bool:
        with self._lock:
            return not self.is_known_job(url) and self.saved_count < self.target_count

    def claim_detail(self, url: str) -> bool:
        """Atomically check can_enqueue_detail and mark the URL seen."""
        with self._lock:
            if not self.can_enqueue_detail(url):
                return False
            self.seen_job_urls.add(url)
            return True

    # ---- listing targets ----
    def can_enqueue_listing(self, url: str) -> bool:
        with self._lock:
            return url not in self.seen_page_urls

    def claim_listing(self, url: str) -> bool:
        """Atomically check can_enqueue_listing and mark the URL seen."""
        with self._lock:
            if url in self.seen_page_urls:
                return False
            self.seen_page_urls.add(url)
            return True

    def record_page_visit(self) -> int:
        with self._lock:
            self.pages_visited += 1
            return self.pages_visited

    # ---- failures ----
    def mark_failed(self, url: str) -> None:
        with self._lock:
            self.failed_urls.add(url)

    def is_failed(self, url: str) -> bool:
        with self._lock:
            return url in self.failed_urls

    def record_blocked(self) -> None:
        with self._lock:
            self.blocked_responses += 1

    # ---- saving ----
    def can_save(self, record: JobRecord) -> bool:
        with self._lock:
            return self.saved_count < self.target_count and record.job_url not in self.saved_job_urls

    def record_saved(self, record: JobRecord) -> int:
        """Add the record's URL to saved_job_urls and bump saved_count as one step."""
        with self._lock:
            self.saved_job_urls.add(record.job_url)
            self.saved_count += 1
            return self.saved_count

    def save(self, record: JobRecord, append: Callable[[JobRecord], None]) -> Optional[int]:
        """
        Persist a record through ``append`` if the quota and dedup gates allow it.

        The gate check, the sink append and the counter update are serialized, so
        concurrent completions cannot both pass the check for the last quota slot.
        If ``append`` raises, nothing is counted and the error propagates.

        Returns:
            The new saved_count, or None if the record was rejected.
        """
        with self._lock:
            if not self.can_save(record):
                return None
            append(record)
            return self.record_saved(record)

    def summary(self, **extra) -> CrawlSummary:
        with self._lock:
            return CrawlSummary(
                saved_count=self.saved_count,
                pages_visited=self.pages_visited,
                unique_job_urls_seen=len(self.seen_job_urls),
                unique_page_urls_seen=len(self.seen_page_urls),
                failed_url_count=len(self.failed_urls),
                blocked_responses=self.blocked_responses,
                **extra,
            )
