import pytest

from jobtrawl.contexts.crawling.links import (
    PageClass,
    classify,
    get_page_number,
    has_page_number,
    is_detail_url,
    same_host,
    set_page_number,
)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://jobs.example.com/job/admin-assistant/acme-ltd-job12345", PageClass.DETAIL),
        ("/job/admin-assistant/acme-ltd-job12345?src=search", PageClass.DETAIL),
        ("https://jobs.example.com/jobs/admin?page=2", PageClass.LISTING),
        ("https://jobs.example.com/jobs/", PageClass.LISTING),
        ("https://jobs.example.com/jobs", PageClass.LISTING),
        ("https://jobs.example.com/job/admin-assistant", PageClass.OTHER),
        ("https://jobs.example.com/jobseekers/advice", PageClass.OTHER),
        ("https://jobs.example.com/about", PageClass.OTHER),
    ],
)
def test_classify(url, expected):
    assert classify(url) is expected


def test_detail_checked_before_listing():
    # Both patterns could apply to this path; it is a job page
    url = "https://jobs.example.com/jobs/archive/job/admin/acme-job99"
    assert classify(url) is PageClass.DETAIL
    assert is_detail_url(url)


def test_get_page_number():
    assert get_page_number("https://x.test/jobs/admin?page=3") == 3
    assert get_page_number("https://x.test/jobs/admin") == 1
    assert get_page_number("https://x.test/jobs/admin?page=abc", default=1) == 1
    assert has_page_number("https://x.test/jobs/admin?page=3")
    assert not has_page_number("https://x.test/jobs/admin?Location=Leeds")


def test_set_page_number_keeps_other_params_in_order():
    url = "https://x.test/jobs/admin?Location=Leeds&page=1&postedWithin=3"
    assert set_page_number(url, 2) == "https://x.test/jobs/admin?Location=Leeds&page=2&postedWithin=3"


def test_set_page_number_adds_missing_param():
    assert set_page_number("https://x.test/jobs/admin", 4) == "https://x.test/jobs/admin?page=4"


def test_same_host():
    assert same_host("https://x.test/jobs", "https://X.test/job/a/b-job1")
    assert not same_host("https://x.test/jobs", "https://www.google.com/")
    assert not same_host("https://x.test/jobs", None)
