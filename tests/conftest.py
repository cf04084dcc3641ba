from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from overcast_archive.db import Database

EXPORT_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<opml version="1.0">
  <head>
    <title>Overcast Podcast Subscriptions</title>
  </head>
  <body>
    <outline text="playlists">
      <outline type="podcast-playlist" title="All Episodes" smart="1" sorting="chronological" />
    </outline>
    <outline text="feeds">
      <outline type="rss" overcastId="100" text="My Show" title="My Show"
        xmlUrl="https://example.com/feed.xml" htmlUrl="https://example.com/"
        subscribed="1" overcastAddedDate="2020-01-01T00:00:00-05:00">
        <outline type="podcast-episode" overcastId="5001" title="Ep1"
          pubDate="2021-01-01T00:00:00Z" played="1"
          url="https://example.com/ep1" overcastUrl="https://overcast.fm/+abc123"
          enclosureUrl="https://example.com/ep1.mp3"
          userUpdatedDate="2021-02-01T12:30:00-05:00" progress="120" />
        <outline type="podcast-episode" overcastId="5002" title="Ep2"
          pubDate="not a date" progress="soon" userDeleted="1" />
        <outline type="podcast-episode" title="Ep3 without an id" />
      </outline>
      <!-- uploads have no id -->
      <outline type="rss" text="Uploads" title="Uploads">
        <outline type="podcast-episode" overcastId="9999" title="Orphan" />
      </outline>
      <outline type="rss" overcastId="200" title="Second &amp; Last" subscribed="0" />
    </outline>
  </body>
</opml>
"""


@pytest.fixture
def export_document() -> str:
    return EXPORT_DOCUMENT


@pytest.fixture
def make_response() -> Callable[..., requests.Response]:
    def _make_response(
        body: str,
        status_code: int = 200,
        reason: str = "OK",
        url: str = "https://overcast.fm/",
        content_type: str = "text/html; charset=utf-8",
        encoding: str | None = "utf-8",
    ) -> requests.Response:
        response = requests.Response()
        response.status_code = status_code
        response.reason = reason
        response.url = url
        response.headers = CaseInsensitiveDict(
            {"Content-Type": content_type}
        )
        response.encoding = encoding
        response._content = body.encode("utf-8")
        return response

    return _make_response


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    with Database(path=tmp_path / "overcast.db") as db:
        db.ensure_schema()
        yield db
