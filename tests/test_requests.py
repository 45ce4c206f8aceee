import random

import pytest
import requests

from jobtrawl.contexts.crawling.errors import TransportError
from jobtrawl.contexts.crawling.requests import (
    FetchResult,
    RequestRateLimiter,
    RequestsTransport,
    SessionPool,
    build_headers,
)


class FakeSession:
    def __init__(self, exc=None):
        self.closed = False
        self.exc = exc

    def get(self, url, **kwargs):
        raise self.exc

    def close(self):
        self.closed = True


def make_pool(**kwargs):
    return SessionPool(rng=random.Random(0), session_factory=FakeSession, **kwargs)


def test_headers_for_first_navigation_look_like_a_search_click():
    headers = build_headers("https://jobs.example.com/jobs/admin", user_agent="UA/1.0")
    assert headers["Referer"] == "https://www.google.com/"
    assert headers["Sec-Fetch-Site"] == "cross-site"
    assert headers["User-Agent"] == "UA/1.0"


def test_headers_for_same_site_navigation():
    headers = build_headers(
        "https://jobs.example.com/job/a/b-job1", referer="https://jobs.example.com/jobs/admin?page=1"
    )
    assert headers["Sec-Fetch-Site"] == "same-origin"
    assert headers["Referer"] == "https://jobs.example.com/jobs/admin?page=1"


def test_fetch_result_raise_for_status():
    assert FetchResult(200, "<html></html>", "https://x.test/").raise_for_status().ok
    with pytest.raises(TransportError) as excinfo:
        FetchResult(503, "", "https://x.test/").raise_for_status()
    assert excinfo.value.status == 503
    assert excinfo.value.kind == "http"


@pytest.mark.parametrize(
    "exc, kind",
    [
        (requests.exceptions.ReadTimeout("Read timed out."), "timeout"),
        (requests.exceptions.ConnectionError("Connection reset by peer"), "network"),
        (requests.exceptions.TooManyRedirects("Exceeded 30 redirects."), "unclassified"),
    ],
)
def test_transport_maps_request_exceptions(exc, kind):
    transport = RequestsTransport()
    pool = SessionPool(rng=random.Random(0), session_factory=lambda: FakeSession(exc))
    identity = pool.acquire()
    with pytest.raises(TransportError) as excinfo:
        transport.fetch("https://x.test/jobs", identity=identity)
    assert excinfo.value.kind == kind
    transport.close()


def test_pool_creates_until_full_then_reuses():
    pool = make_pool(max_pool_size=3, max_usage_count=100)
    identities = {pool.acquire().identity_id for _ in range(3)}
    assert identities == {1, 2, 3}
    for _ in range(20):
        assert pool.acquire().identity_id in identities
    assert pool.active_count == 3


def test_identity_retired_after_max_usage():
    pool = make_pool(max_pool_size=1, max_usage_count=2)
    first = pool.acquire()
    second = pool.acquire()
    assert first is second
    assert first.retired
    assert pool.acquire() is not first
    assert pool.retired_count == 1


def test_rotate_retires_immediately():
    pool = make_pool(max_pool_size=1)
    identity = pool.acquire()
    pool.rotate(identity)
    assert identity.retired
    assert pool.acquire() is not identity


def test_error_score():
    pool = make_pool(max_pool_size=1, max_error_score=2)
    identity = pool.acquire()
    pool.mark_degraded(identity)
    pool.mark_good(identity)
    assert identity.error_score == 0.5
    assert not identity.retired
    pool.mark_degraded(identity)
    pool.mark_degraded(identity)
    assert identity.retired


def test_close_closes_all_sessions():
    pool = make_pool(max_pool_size=2)
    a = pool.acquire()
    pool.rotate(a)
    b = pool.acquire()
    pool.close()
    assert a.session.closed and b.session.closed


def test_rate_limiter_spaces_requests():
    now = [100.0]
    waits = []

    def sleep(seconds):
        waits.append(seconds)

    limiter = RequestRateLimiter(120, clock=lambda: now[0], sleep=sleep)
    assert limiter.acquire() == 0
    assert limiter.acquire() == pytest.approx(0.5)
    assert limiter.acquire() == pytest.approx(1.0)
    now[0] = 200.0
    assert limiter.acquire() == 0
    assert waits == [pytest.approx(0.5), pytest.approx(1.0)]
