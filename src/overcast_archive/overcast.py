import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NewType

import dateutil.parser
import requests
from lxml import etree

logger = logging.getLogger("overcast")

_SAFARI_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.3 "
    "Safari/605.1.15"
)

_SAFARI_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "User-Agent": _SAFARI_UA,
    "Accept-Language": "en-US,en;q=0.9",
}

LOGIN_URL = "https://overcast.fm/login"
EXPORT_URL = "https://overcast.fm/account/export_opml/extended"

# Overcast's wording on the login page when the account lookup fails. Matched as a
# plain substring, so any rewording on their side breaks detection.
AUTH_FAILURE_PHRASE = "Sorry, there was a problem looking up your Overcast account"

_RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

OvercastFeedItemID = NewType("OvercastFeedItemID", str)
OvercastEpisodeItemID = NewType("OvercastEpisodeItemID", str)


class AuthError(Exception):
    pass


class InvalidCredentialsError(AuthError):
    pass


class AuthTransportError(AuthError):
    pass


class FetchError(Exception):
    pass


class FetchTransportError(FetchError):
    pass


class UnexpectedResponseError(FetchError):
    pass


class ParseError(Exception):
    pass


class MalformedDocumentError(ParseError):
    pass


class MissingFeedsOutlineError(ParseError):
    pass


@dataclass
class Session:
    requests_session: requests.Session


def session() -> Session:
    requests_session = requests.Session()
    requests_session.headers.update(_SAFARI_HEADERS)
    return Session(requests_session=requests_session)


def indicates_auth_failure(body: str) -> bool:
    return AUTH_FAILURE_PHRASE in body


def authenticate(session: Session, username: str, password: str) -> None:
    """
    Log in with Overcast's web form. On success the session's cookie jar holds the
    login cookie used by later requests.
    """
    logger.debug("POST %s", LOGIN_URL)
    try:
        r = session.requests_session.post(
            LOGIN_URL,
            data={"email": username, "password": password},
        )
        body = r.text
    except requests.RequestException as e:
        raise AuthTransportError(f"Login request failed: {e}") from e

    if indicates_auth_failure(body):
        logger.debug("Login page reported an account lookup failure")
        raise InvalidCredentialsError("Unable to authenticate with Overcast")


def fetch_export(session: Session) -> bytes:
    """
    Fetch the extended OPML export. The session must already be authenticated, but
    that isn't checked here: a logged-out response fails later when parsed.

    The raw bytes are returned so the XML declaration decides the charset.
    """
    logger.debug("GET %s", EXPORT_URL)
    try:
        r = session.requests_session.get(
            EXPORT_URL,
            headers={"Accept": "application/xml"},
        )
        body = r.content
    except requests.RequestException as e:
        raise FetchTransportError(f"Export request failed: {e}") from e

    if not r.ok:
        raise UnexpectedResponseError(
            f"Export request returned HTTP {r.status_code} {r.reason}"
        )
    if not body.strip():
        raise UnexpectedResponseError("Export response body is empty")

    return body


@dataclass
class ExportEpisode:
    id: OvercastEpisodeItemID
    title: str
    played: bool
    user_deleted: bool
    published_at: datetime | None
    updated_at: datetime | None
    html_url: str | None
    overcast_url: str | None
    mp3_url: str | None
    progress: int | None


@dataclass
class ExportFeed:
    id: OvercastFeedItemID
    title: str
    subscribed: bool
    feed_url: str | None
    html_url: str | None
    episodes: list[ExportEpisode] = field(default_factory=list)


def parse_export(document: str | bytes) -> list[ExportFeed]:
    root = _parse_xml(document)

    feeds_outline = _find_feeds_outline(root)
    if feeds_outline is None:
        raise MissingFeedsOutlineError("No <outline text='feeds'> in export")

    feeds: list[ExportFeed] = []
    for outline in _child_elements(feeds_outline):
        if feed := _feed_from_outline(outline):
            feeds.append(feed)

    feed_count = len(feeds)
    episode_count = sum(len(feed.episodes) for feed in feeds)
    logger.debug(
        "Found %d feeds and %d episodes in extended export", feed_count, episode_count
    )
    return feeds


def _parse_xml(document: str | bytes) -> etree._Element:
    if isinstance(document, str):
        # lxml refuses str input carrying an encoding declaration
        document = document.encode("utf-8")

    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(document, parser=parser)
    except etree.XMLSyntaxError as e:
        raise MalformedDocumentError(f"Malformed export document: {e}") from e


def _find_feeds_outline(root: etree._Element) -> etree._Element | None:
    for el in root.iter():
        if _local_name(el) == "outline" and el.get("text") == "feeds":
            return el
    return None


def _child_elements(el: etree._Element) -> list[etree._Element]:
    return [child for child in el if isinstance(child.tag, str)]


def _local_name(el: etree._Element) -> str | None:
    if not isinstance(el.tag, str):
        return None
    return etree.QName(el).localname


def _required_attrs(el: etree._Element) -> tuple[str, str] | None:
    title = el.get("title")
    item_id = el.get("overcastId")
    if not title or not item_id:
        return None
    return title, item_id


def _feed_from_outline(outline: etree._Element) -> ExportFeed | None:
    required = _required_attrs(outline)
    if required is None:
        logger.debug("Skipping feed outline missing title or id: %s", outline.attrib)
        return None
    title, item_id = required

    episodes: list[ExportEpisode] = []
    for child in _child_elements(outline):
        if episode := _episode_from_outline(child):
            episodes.append(episode)

    return ExportFeed(
        id=OvercastFeedItemID(item_id),
        title=title,
        subscribed=_flag(outline, "subscribed"),
        feed_url=outline.get("xmlUrl"),
        html_url=outline.get("htmlUrl"),
        episodes=episodes,
    )


def _episode_from_outline(outline: etree._Element) -> ExportEpisode | None:
    required = _required_attrs(outline)
    if required is None:
        logger.debug(
            "Skipping episode outline missing title or id: %s", outline.attrib
        )
        return None
    title, item_id = required

    return ExportEpisode(
        id=OvercastEpisodeItemID(item_id),
        title=title,
        played=_flag(outline, "played"),
        user_deleted=_flag(outline, "userDeleted"),
        published_at=parse_timestamp(outline.get("pubDate")),
        updated_at=parse_timestamp(outline.get("userUpdatedDate")),
        html_url=outline.get("url"),
        overcast_url=outline.get("overcastUrl"),
        mp3_url=outline.get("enclosureUrl"),
        progress=parse_progress(outline.get("progress")),
    )


def _flag(el: etree._Element, name: str) -> bool:
    return el.get(name) == "1"


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an RFC 3339 export timestamp into a naive UTC datetime. Bare dates,
    basic-format and offset-less values are rejected.

    e.g. "2021-01-01T00:00:00-05:00" -> datetime(2021, 1, 1, 5, 0)
    """
    if value is None:
        return None
    if not _RFC3339_RE.match(value):
        logger.debug("Unparsable timestamp: %r", value)
        return None
    try:
        dt = dateutil.parser.isoparse(value.upper())
    except (ValueError, OverflowError):
        logger.debug("Unparsable timestamp: %r", value)
        return None
    if dt.tzinfo is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_progress(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        progress = int(value)
    except ValueError:
        logger.debug("Unparsable progress: %r", value)
        return None
    # Stored as a SQLite INTEGER, which is a signed 64-bit value
    if not _INT64_MIN <= progress <= _INT64_MAX:
        logger.debug("Progress out of range: %r", value)
        return None
    return progress
