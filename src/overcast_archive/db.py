import logging
import sqlite3
from collections.abc import Iterable
from contextlib import AbstractContextManager
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from types import TracebackType

from overcast_archive.overcast import (
    ExportEpisode,
    ExportFeed,
    OvercastEpisodeItemID,
    OvercastFeedItemID,
)
from overcast_archive.rowmodel import asrowdict, fromrow

logger = logging.getLogger("db")


class StoreError(Exception):
    pass


_CREATE_FEEDS_TABLE = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    subscribed BOOLEAN NOT NULL,
    feed_url TEXT,
    html_url TEXT
)
"""

_CREATE_EPISODES_TABLE = """
CREATE TABLE IF NOT EXISTS episodes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    played BOOLEAN NOT NULL,
    feed_id TEXT NOT NULL,
    published_at TEXT,
    updated_at TEXT,
    html_url TEXT,
    overcast_url TEXT,
    mp3_url TEXT,
    progress INTEGER,
    user_deleted BOOLEAN NOT NULL,
    FOREIGN KEY (feed_id) REFERENCES feeds(id)
)
"""


@dataclass
class Feed:
    id: OvercastFeedItemID
    title: str
    subscribed: bool
    feed_url: str | None
    html_url: str | None

    @staticmethod
    def fieldnames() -> list[str]:
        return [f.name for f in fields(Feed)]

    @staticmethod
    def from_export(export_feed: ExportFeed) -> "Feed":
        return Feed(
            id=export_feed.id,
            title=export_feed.title,
            subscribed=export_feed.subscribed,
            feed_url=export_feed.feed_url,
            html_url=export_feed.html_url,
        )


@dataclass
class Episode:
    id: OvercastEpisodeItemID
    title: str
    played: bool
    feed_id: OvercastFeedItemID
    published_at: datetime | None
    updated_at: datetime | None
    html_url: str | None
    overcast_url: str | None
    mp3_url: str | None
    progress: int | None
    user_deleted: bool

    @staticmethod
    def fieldnames() -> list[str]:
        return [f.name for f in fields(Episode)]

    @staticmethod
    def from_export(
        export_episode: ExportEpisode,
        feed_id: OvercastFeedItemID,
    ) -> "Episode":
        return Episode(
            id=export_episode.id,
            title=export_episode.title,
            played=export_episode.played,
            feed_id=feed_id,
            published_at=export_episode.published_at,
            updated_at=export_episode.updated_at,
            html_url=export_episode.html_url,
            overcast_url=export_episode.overcast_url,
            mp3_url=export_episode.mp3_url,
            progress=export_episode.progress,
            user_deleted=export_episode.user_deleted,
        )


def _upsert_sql(table: str, fieldnames: list[str]) -> str:
    columns = ", ".join(fieldnames)
    placeholders = ", ".join(f":{name}" for name in fieldnames)
    assignments = ", ".join(
        f"{name} = excluded.{name}" for name in fieldnames if name != "id"
    )
    return (
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
        f"ON CONFLICT(id) DO UPDATE SET {assignments}"
    )


_UPSERT_FEED = _upsert_sql("feeds", Feed.fieldnames())
_UPSERT_EPISODE = _upsert_sql("episodes", Episode.fieldnames())


class Database(AbstractContextManager["Database"]):
    path: Path
    _conn: sqlite3.Connection | None = None

    def __init__(self, path: Path) -> None:
        self.path = path

    def __enter__(self) -> "Database":
        logger.debug("opening database: %s", self.path)
        try:
            self._conn = sqlite3.connect(self.path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StoreError(f"Unable to open {self.path}: {e}") from e
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            logger.error("closing database after error: %s", exc_value)
        else:
            logger.debug("closing database: %s", self.path)
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database must be used as a context manager"
        return self._conn

    def ensure_schema(self) -> None:
        try:
            with self.conn:
                self.conn.execute(_CREATE_FEEDS_TABLE)
                self.conn.execute(_CREATE_EPISODES_TABLE)
        except sqlite3.Error as e:
            raise StoreError(f"Unable to create schema: {e}") from e

    def upsert(self, feeds: Iterable[ExportFeed]) -> None:
        """
        Insert or replace each feed, then its episodes, keyed by id.

        Every feed is committed together with its episodes. The first failure rolls
        back that feed's group and stops; earlier feeds stay written.
        """
        feed_count = 0
        episode_count = 0
        for export_feed in feeds:
            db_feed = Feed.from_export(export_feed)
            try:
                with self.conn:
                    self.conn.execute(_UPSERT_FEED, asrowdict(db_feed))
                    for export_episode in export_feed.episodes:
                        db_episode = Episode.from_export(export_episode, db_feed.id)
                        self.conn.execute(_UPSERT_EPISODE, asrowdict(db_episode))
                        episode_count += 1
            except (sqlite3.Error, OverflowError) as e:
                raise StoreError(f"Unable to write feed {db_feed.id}: {e}") from e
            feed_count += 1

        logger.debug("upserted %i feeds and %i episodes", feed_count, episode_count)

    def feeds(self) -> list[Feed]:
        columns = ", ".join(Feed.fieldnames())
        try:
            rows = self.conn.execute(f"SELECT {columns} FROM feeds ORDER BY id")
            return [fromrow(Feed, row) for row in rows]
        except sqlite3.Error as e:
            raise StoreError(f"Unable to read feeds: {e}") from e

    def episodes(self) -> list[Episode]:
        columns = ", ".join(Episode.fieldnames())
        try:
            rows = self.conn.execute(
                f"SELECT {columns} FROM episodes ORDER BY feed_id, published_at"
            )
            return [fromrow(Episode, row) for row in rows]
        except sqlite3.Error as e:
            raise StoreError(f"Unable to read episodes: {e}") from e
