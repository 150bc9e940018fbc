"""
Paginator and full-run tests.
"""

from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from conftest import LISTING_URL, listing, make_post
from ripit_core import (
    ListingDecodeError,
    RunTerminated,
    TerminationReason,
    split_sort,
)


def query_of(call):
    return parse_qs(urlsplit(call.request.url).query)


@pytest.mark.parametrize("overrides,url,params", [
    ({"path": "r/pics", "sort": "new"},
     "https://www.reddit.com/r/pics/new.json", {"limit": "100"}),
    ({"path": "r/pics/", "sort": "top-year", "entries_limit": 25},
     "https://www.reddit.com/r/pics/top.json", {"limit": "25", "t": "year"}),
    ({"path": "r/pics", "sort": ""},
     "https://www.reddit.com/r/pics.json", {"limit": "100"}),
    ({"path": "", "sort": ""},
     "https://www.reddit.com/hot.json", {"limit": "100"}),
    ({"path": "r/pics", "sort": "top-all", "search": "cats"},
     "https://www.reddit.com/r/pics/search.json",
     {"sort": "top", "limit": "100", "t": "all", "q": "cats", "restrict_sr": "true"}),
])
def test_listing_request(make_core, overrides, url, params):
    core = make_core(**overrides)
    assert core.paginator.listing_request() == (url, params)


def test_split_sort_rejects_unknown_modes():
    assert split_sort("best") == ("", "")
    assert split_sort("rising") == ("rising", "")
    with pytest.raises(ValueError):
        split_sort("top-decade")


@responses.activate
def test_empty_page_ends_run_with_pages_exhausted(make_core, status):
    responses.add(responses.GET, LISTING_URL, json=listing())
    core = make_core(dry_run=True)

    with pytest.raises(RunTerminated) as exc:
        core.paginator.traverse(core.handle_entry)

    assert exc.value.reason is TerminationReason.PAGES_EXHAUSTED
    assert "Processed Posts:  0" in status.getvalue()


@responses.activate
def test_cursor_advances_until_a_page_adds_nothing(make_core):
    responses.add(responses.GET, LISTING_URL,
                  json=listing(make_post("p1", url="https://i.redd.it/1.jpg"),
                               make_post("p2", url="https://example.com/x")))
    responses.add(responses.GET, LISTING_URL, json=listing())
    core = make_core(dry_run=True, after="t3_seed")

    assert core.run() is TerminationReason.PAGES_EXHAUSTED
    assert core.stats.processed == 2
    assert core.stats.saved == 1
    assert core.stats.other == 1

    first, second = responses.calls
    assert query_of(first)["after"] == ["t3_seed"]
    assert query_of(second)["after"] == ["t3_p2"]
    assert first.request.headers["Accept"] == "application/json"


@responses.activate
def test_undecodable_listing_is_fatal(make_core):
    responses.add(responses.GET, LISTING_URL, body="<html>busy</html>", content_type="text/html")
    core = make_core(dry_run=True)

    with pytest.raises(ListingDecodeError):
        core.run()
    assert core.controller.reason is None


@responses.activate
def test_listing_without_children_is_fatal(make_core):
    responses.add(responses.GET, LISTING_URL, json={"message": "Not Found", "error": 404}, status=404)
    core = make_core(dry_run=True)

    with pytest.raises(ListingDecodeError):
        core.run()


@responses.activate
def test_processed_never_below_outcome_counts(make_core, tmp_path):
    (tmp_path / "dup [p2].jpg").write_bytes(b"old")
    responses.add(responses.GET, LISTING_URL, json=listing(
        make_post("p1", title="ok", url="https://i.redd.it/1.jpg"),
        make_post("p2", title="dup", url="https://i.redd.it/2.jpg"),
        make_post("p3", title="broken", url="https://i.redd.it/3.jpg"),
        make_post("p4", title="text", url="https://example.com/post"),
    ))
    responses.add(responses.HEAD, "https://i.redd.it/1.jpg",
                  headers={"Content-Type": "image/jpeg", "Content-Length": "2"})
    responses.add(responses.GET, "https://i.redd.it/1.jpg", body=b"ok")
    responses.add(responses.HEAD, "https://i.redd.it/3.jpg", status=404)

    core = make_core()
    stats = core.stats

    def checked_handler(entry):
        core.handle_entry(entry)
        assert stats.processed >= stats.saved + stats.failed + stats.repeated

    url, params = core.paginator.listing_request()
    with core.paginator.fetch_page(url, params) as response:
        last = core.paginator.handle_page(response, checked_handler)

    assert last == "t3_p4"

    assert stats.snapshot() == {
        "processed": 4, "saved": 1, "failed": 1, "repeated": 1, "other": 1, "copied_bytes": 2,
    }


@responses.activate
def test_second_identical_run_saves_nothing_new(make_core, tmp_path, status):
    page = listing(
        make_post("a1", title="one", url="https://i.redd.it/1.png"),
        make_post("a2", title="two", url="https://i.redd.it/2.png"),
    )
    for _ in range(2):
        responses.add(responses.GET, LISTING_URL, json=page)
        responses.add(responses.GET, LISTING_URL, json=listing())
    for name in ("1", "2"):
        url = f"https://i.redd.it/{name}.png"
        responses.add(responses.HEAD, url, headers={"Content-Type": "image/png", "Content-Length": "4"})
        responses.add(responses.GET, url, body=b"data")

    first = make_core()
    assert first.run() is TerminationReason.PAGES_EXHAUSTED
    assert first.stats.saved == 2

    second = make_core()
    assert second.run() is TerminationReason.PAGES_EXHAUSTED
    assert second.stats.saved == 0
    assert second.stats.repeated == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["one [a1].png", "two [a2].png"]


def test_termination_only_reports_once(make_core, status):
    core = make_core(dry_run=True)
    assert core.controller.finish(TerminationReason.FILE_CAP_REACHED) is True
    assert core.interrupt() is False
    assert core.controller.reason is TerminationReason.FILE_CAP_REACHED
    assert status.getvalue().count("Processed Posts:") == 1
