import io

import pytest

from ripit_core import ListingEntry, RipCore, RunConfig

LISTING_URL = "https://www.reddit.com/r/pics/new.json"


def make_post(post_id="abc", title="A title", url="https://i.redd.it/abc.jpg", score=10,
              flair=None, preview=None, **extra):
    data = {
        "name": f"t3_{post_id}",
        "title": title,
        "url": url,
        "score": score,
        "subreddit": "pics",
        "author": "someone",
        "link_flair_text": flair,
    }
    if preview is not None:
        data["preview"] = preview
    data.update(extra)
    return data


def make_entry(**kwargs) -> ListingEntry:
    return ListingEntry.from_api(make_post(**kwargs))


def listing(*posts):
    return {"kind": "Listing", "data": {"children": [{"kind": "t3", "data": p} for p in posts]}}


@pytest.fixture
def status():
    return io.StringIO()


@pytest.fixture
def make_core(tmp_path, status):
    """Build a RipCore writing into tmp_path with a captured status stream."""

    def _make(**overrides):
        values = {
            "path": "r/pics",
            "sort": "new",
            "folder": tmp_path,
            "status_stream": status,
        }
        values.update(overrides)
        return RipCore(RunConfig(**values))

    return _make
