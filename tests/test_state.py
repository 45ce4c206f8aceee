import threading

import pytest

from jobtrawl.contexts.crawling.models import JobRecord
from jobtrawl.contexts.crawling.state import CancellationToken, CrawlState


def record(n, title="Clerk"):
    return JobRecord(
        title=title,
        company=None,
        location=None,
        salary=None,
        date_posted=None,
        job_type=None,
        job_category=None,
        description_html=None,
        description_text=None,
        job_url=f"https://jobs.example.com/job/clerk/acme-job{n}",
    )


def test_claim_detail_once():
    state = CrawlState(10)
    assert state.claim_detail("u1")
    assert not state.claim_detail("u1")
    assert state.is_known_job("u1")


def test_failed_url_is_never_claimed():
    state = CrawlState(10)
    state.mark_failed("u2")
    assert not state.claim_detail("u2")


def test_no_detail_claims_after_quota():
    state = CrawlState(1)
    assert state.save(record(1), lambda r: None) == 1
    assert state.quota_reached
    assert not state.claim_detail("u3")


def test_claim_listing_once():
    state = CrawlState(10)
    assert state.claim_listing("p1")
    assert not state.claim_listing("p1")


def test_save_rejects_duplicate_url():
    state = CrawlState(10)
    written = []
    assert state.save(record(1), written.append) == 1
    assert state.save(record(1, title="Other"), written.append) is None
    assert len(written) == 1


def test_failed_append_is_not_counted():
    state = CrawlState(10)

    def broken(_):
        raise OSError("disk full")

    with pytest.raises(OSError):
        state.save(record(1), broken)
    assert state.saved_count == 0
    assert state.save(record(1), lambda r: None) == 1


def test_concurrent_saves_never_exceed_quota():
    state = CrawlState(25)
    written = []
    barrier = threading.Barrier(8)

    def worker(offset):
        barrier.wait()
        for n in range(offset, offset + 40):
            state.save(record(n), written.append)

    threads = [threading.Thread(target=worker, args=(i * 40,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert state.saved_count == 25
    assert len(written) == 25
    assert len({r.job_url for r in written}) == 25


def test_concurrent_claims_are_exclusive():
    state = CrawlState(1000)
    winners = []
    lock = threading.Lock()

    def worker():
        if state.claim_detail("shared"):
            with lock:
                winners.append(threading.get_ident())

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(winners) == 1


def test_summary_counts():
    state = CrawlState(5)
    state.claim_listing("p1")
    state.record_page_visit()
    state.claim_detail("u1")
    state.claim_detail("u2")
    state.mark_failed("u2")
    state.record_blocked()
    state.save(record(1), lambda r: None)

    summary = state.summary(stop_reason="frontier_empty")
    assert summary.saved_count == 1
    assert summary.pages_visited == 1
    assert summary.unique_job_urls_seen == 2
    assert summary.unique_page_urls_seen == 1
    assert summary.failed_url_count == 1
    assert summary.blocked_responses == 1
    assert summary.stop_reason == "frontier_empty"


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    assert token.cancel("quota_reached")
    assert not token.cancel("again")
    assert token.cancelled
    assert token.reason == "quota_reached"
