import json

import pytest
from conftest import (
    START_URL,
    FakeTransport,
    ListSink,
    detail_page,
    fast_config,
    job_card,
    job_url,
    listing_page,
    make_crawler,
    no_sleep,
    page_url,
)

from jobtrawl.contexts.crawling.errors import TransportError
from jobtrawl.contexts.crawling.links import PageClass
from jobtrawl.contexts.crawling.models import CrawlTarget, JobRecord, JobSeed
from jobtrawl.contexts.crawling.orchestration import run_crawl


def site(pages, jobs_per_page=4, detail_status=200):
    """Listing pages 1..pages, each linking ``jobs_per_page`` distinct jobs, plus their detail pages."""
    mapping = {}
    n = 0
    for page in range(1, pages + 1):
        numbers = list(range(n + 1, n + jobs_per_page + 1))
        n += jobs_per_page
        mapping[page_url(page)] = (200, listing_page(numbers))
        for number in numbers:
            mapping[job_url(number)] = (detail_status, detail_page(title=f"Admin Assistant {number}"))
    return mapping


def test_crawl_saves_target_from_two_pages(tmp_path):
    transport = FakeTransport(site(3))
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, target_record_count=5, max_pages=2), transport, sink)

    summary = crawler.run()

    assert summary.saved_count == 5
    assert summary.stop_reason == "quota_reached"
    assert summary.pages_visited == 2
    assert len(sink.records) == 5
    assert len(set(sink.urls)) == 5
    assert all(r.job_type == "FULL_TIME" for r in sink.records)
    assert transport.count(page_url(3)) == 0


def test_page_budget_stops_pagination(tmp_path):
    transport = FakeTransport(site(5, jobs_per_page=1))
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, target_record_count=100, max_pages=3), transport, sink)

    summary = crawler.run()

    assert summary.pages_visited == 3
    assert summary.stop_reason == "page_budget_exhausted"
    assert transport.count(page_url(4)) == 0
    assert [transport.count(page_url(p)) for p in (1, 2, 3)] == [1, 1, 1]
    assert summary.saved_count == 3


def test_duplicate_start_urls_dispatch_once(tmp_path):
    transport = FakeTransport(site(1))
    crawler = make_crawler(fast_config(tmp_path, max_pages=1), transport)

    crawler.run(start_urls=[START_URL, START_URL])

    assert transport.count(START_URL) == 1


def test_job_linked_from_two_pages_is_fetched_once(tmp_path):
    pages = {
        page_url(1): (200, listing_page([1, 2])),
        page_url(2): (200, listing_page([2, 3])),
        job_url(1): (200, detail_page(title="One")),
        job_url(2): (200, detail_page(title="Two")),
        job_url(3): (200, detail_page(title="Three")),
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    summary = make_crawler(fast_config(tmp_path, target_record_count=10, max_pages=2), transport, sink).run()

    assert transport.count(job_url(2)) == 1
    assert summary.saved_count == 3
    assert sorted(sink.urls) == sorted([job_url(1), job_url(2), job_url(3)])


def test_blocked_detail_falls_back_to_listing_seed(tmp_path):
    captcha = "<html><body>Please solve the captcha to continue</body></html>".ljust(120)
    pages = {
        page_url(1): (200, listing_page([], cards=[job_card(1, title="X", company="Y")])),
        job_url(1): (200, captcha),
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, max_pages=1), transport, sink)

    summary = crawler.run()

    assert summary.saved_count == 1
    record = sink.records[0]
    assert (record.title, record.company, record.job_type) == ("X", "Y", None)
    assert record.job_url == job_url(1)
    assert crawler.state.is_failed(job_url(1))
    assert summary.failed_url_count == 1
    assert summary.blocked_responses == 1


def test_listing_server_errors_requeue_then_skip(tmp_path):
    pages = {
        page_url(1): (500, "Internal Server Error"),
        page_url(2): (200, listing_page([7])),
        job_url(7): (200, detail_page(title="Seven")),
    }
    transport = FakeTransport(pages)
    config = fast_config(tmp_path, max_pages=2, max_request_retries=1, listing_requeue_limit=1)
    crawler = make_crawler(config, transport)

    summary = crawler.run()

    # (1 try + 1 retry) x (first pass + 1 requeue)
    assert transport.count(page_url(1)) == 4
    assert transport.count(page_url(2)) == 1
    assert not crawler.state.is_failed(page_url(1))
    assert summary.failed_url_count == 0
    assert summary.saved_count == 1
    assert transport.count(page_url(3)) == 0


def test_detail_not_found_saves_seed(tmp_path):
    pages = {
        page_url(1): (200, listing_page([], cards=[job_card(1, title="Ops Lead", location="Leeds")])),
        job_url(1): (404, "Not Found"),
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, max_pages=1), transport, sink)

    summary = crawler.run()

    assert transport.count(job_url(1)) == 1
    assert summary.saved_count == 1
    assert sink.records[0].title == "Ops Lead"
    assert sink.records[0].location == "Leeds"
    assert summary.failed_url_count == 1


def test_detail_timeouts_retry_then_succeed(tmp_path):
    pages = {
        page_url(1): (200, listing_page([1])),
        job_url(1): [TransportError("timeout", "Read timed out."), (200, detail_page(title="Patient"))],
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    summary = make_crawler(fast_config(tmp_path, max_pages=1), transport, sink).run()

    assert transport.count(job_url(1)) == 2
    assert summary.saved_count == 1
    assert sink.records[0].title == "Patient"
    assert summary.failed_url_count == 0


def test_detail_without_title_is_dropped(tmp_path):
    untitled = "<html><body><div class=\"job-description\">" + "Experience required. " * 40 + "</div></body></html>"
    pages = {
        page_url(1): (200, listing_page([], cards=['<li><a href="/job/x/acme-job1"> </a></li>'])),
        "https://jobs.example.com/job/x/acme-job1": (200, untitled),
    }
    sink = ListSink()
    summary = make_crawler(fast_config(tmp_path, max_pages=1), FakeTransport(pages), sink).run()

    assert summary.saved_count == 0
    assert sink.records == []


def test_listing_only_mode_skips_detail_pages(tmp_path):
    transport = FakeTransport(site(1, jobs_per_page=3))
    sink = ListSink()
    summary = make_crawler(
        fast_config(tmp_path, max_pages=1, collect_details=False), transport, sink
    ).run()

    assert summary.saved_count == 3
    assert transport.calls == [page_url(1)]
    assert [r.title for r in sink.records] == ["Admin Assistant 1", "Admin Assistant 2", "Admin Assistant 3"]
    assert all(r.job_type is None for r in sink.records)


def test_quota_is_never_exceeded_under_concurrency(tmp_path):
    transport = FakeTransport(site(2, jobs_per_page=20))
    sink = ListSink()
    config = fast_config(tmp_path, target_record_count=3, max_pages=2, max_concurrency=12)
    summary = make_crawler(config, transport, sink).run()

    assert summary.saved_count == 3
    assert len(sink.records) == 3
    assert len(set(sink.urls)) == 3
    # Each listing page queues at most ceil(3 * 1.5) detail pages
    assert summary.unique_job_urls_seen <= 10


def test_requests_carry_referer_chain(tmp_path):
    transport = FakeTransport(site(1, jobs_per_page=1))
    make_crawler(fast_config(tmp_path, max_pages=1), transport).run()

    first, detail = transport.headers[0], transport.headers[1]
    assert first["Referer"] == "https://www.google.com/"
    assert first["Sec-Fetch-Site"] == "cross-site"
    assert detail["Referer"] == page_url(1)
    assert detail["Sec-Fetch-Site"] == "same-origin"


def test_run_crawl_writes_output_and_summary(tmp_path):
    config = fast_config(tmp_path, target_record_count=2, max_pages=1)
    summary = run_crawl(config, transport=FakeTransport(site(1)), sleep=no_sleep)

    assert summary.ok
    assert summary.saved_count == 2
    lines = (tmp_path / "jobs.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    written = json.loads((tmp_path / "jobs.summary.json").read_text(encoding="utf-8"))
    assert written["saved_count"] == 2
    assert written["status"] == "ok"


def test_run_crawl_reports_fatal_configuration(tmp_path):
    summary = run_crawl(
        overrides={"start_urls": ["ftp://jobs.example.com/jobs"]},
        config_paths=[],
        write_summary_file=False,
    )

    assert summary.status == "failed"
    assert summary.stop_reason == "error"
    assert "FatalConfigurationError" in summary.error
    assert summary.saved_count == 0


def test_detail_not_found_with_block_words_in_url_is_not_retried(tmp_path):
    path = "/job/blocked-drain-engineer/dyno-rod-job4242"
    url = f"https://jobs.example.com{path}"
    pages = {
        page_url(1): (200, listing_page([], cards=[f'<li><a href="{path}">Blocked Drain Engineer</a></li>'])),
        url: (404, "Not Found"),
    }
    transport = FakeTransport(pages)
    crawler = make_crawler(fast_config(tmp_path, max_pages=1, max_request_retries=4), transport)

    summary = crawler.run()

    assert transport.count(url) == 1
    assert crawler.state.is_failed(url)
    assert summary.blocked_responses == 0
    assert crawler.sessions.retired_count == 0


def test_rate_limited_detail_rotates_session_and_retries(tmp_path):
    pages = {
        page_url(1): (200, listing_page([1])),
        job_url(1): [(429, "Too Many Requests"), (200, detail_page(title="Second Try"))],
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, max_pages=1), transport, sink)

    summary = crawler.run()

    assert transport.count(job_url(1)) == 2
    assert [r.title for r in sink.records] == ["Second Try"]
    assert not crawler.state.is_failed(job_url(1))
    assert summary.failed_url_count == 0
    assert summary.blocked_responses == 1
    assert crawler.sessions.retired_count >= 1


def test_forbidden_detail_falls_back_after_retry_budget(tmp_path):
    pages = {
        page_url(1): (200, listing_page([], cards=[job_card(1, title="Office Manager", location="York")])),
        job_url(1): (403, "Forbidden"),
    }
    transport = FakeTransport(pages)
    sink = ListSink()
    crawler = make_crawler(fast_config(tmp_path, max_pages=1, max_request_retries=2), transport, sink)

    summary = crawler.run()

    # 1 try + 2 retries, each on a fresh session
    assert transport.count(job_url(1)) == 3
    assert summary.blocked_responses == 3
    assert [(r.title, r.location) for r in sink.records] == [("Office Manager", "York")]
    assert sink.records[0].description_html is None
    assert crawler.state.is_failed(job_url(1))
    assert summary.failed_url_count == 1


def test_fallback_record_drops_listing_snippet(tmp_path):
    state = {
        "searchResults": {
            "items": [
                {
                    "title": "Payroll Clerk",
                    "companyName": "FinCo",
                    "url": "/job/payroll-clerk/finco-job555",
                    "textSnippet": "<p>Process the monthly payroll.</p>",
                }
            ]
        }
    }
    listing = f"<html><body><script>window.__PRELOADED_STATE__ = {json.dumps(state)};</script></body></html>"
    url = "https://jobs.example.com/job/payroll-clerk/finco-job555"
    captcha = "<html><body>Please solve the captcha to continue</body></html>".ljust(120)
    transport = FakeTransport({page_url(1): (200, listing), url: (200, captcha)})
    sink = ListSink()

    summary = make_crawler(fast_config(tmp_path, max_pages=1), transport, sink).run()

    assert summary.saved_count == 1
    record = sink.records[0]
    assert (record.title, record.company, record.job_url) == ("Payroll Clerk", "FinCo", url)
    assert record.description_html is None
    assert record.description_text is None


def test_queued_details_are_not_fetched_after_quota(tmp_path):
    transport = FakeTransport(site(1, jobs_per_page=12))
    sink = ListSink()
    config = fast_config(tmp_path, target_record_count=8, max_pages=1, max_concurrency=4)
    crawler = make_crawler(config, transport, sink)

    summary = crawler.run()

    assert summary.saved_count == 8
    fetched = [n for n in range(1, 13) if transport.count(job_url(n))]
    # All 12 are queued (ceil(8 * 1.5)); past the quota only the other 3 workers' requests can still go out
    assert len(fetched) <= 8 + config.max_concurrency - 1
    assert len(fetched) < 12
    assert all(transport.count(job_url(n)) <= 1 for n in range(1, 13))


def test_target_dequeued_after_quota_is_dropped(tmp_path):
    transport = FakeTransport(site(1, jobs_per_page=2))
    crawler = make_crawler(fast_config(tmp_path, target_record_count=1, max_pages=1), transport)
    crawler.state.save(JobRecord.from_seed(JobSeed(title="Done"), job_url(1)), lambda record: None)

    crawler._process(CrawlTarget(url=job_url(2), page_class=PageClass.DETAIL, seed=JobSeed(title="Late")))

    assert crawler.state.quota_reached
    assert transport.calls == []


def test_run_crawl_writes_summary_when_interrupted(tmp_path):
    transport = FakeTransport({page_url(1): KeyboardInterrupt()})
    summary_path = tmp_path / "interrupted.summary.json"

    with pytest.raises(KeyboardInterrupt):
        run_crawl(
            fast_config(tmp_path, max_pages=1),
            transport=transport,
            sleep=no_sleep,
            summary_path=summary_path,
        )

    written = json.loads(summary_path.read_text(encoding="utf-8"))
    assert written["status"] == "failed"
    assert written["stop_reason"] == "interrupted"
    assert written["error_type"] == "KeyboardInterrupt"
