"""
Feed Store
==========

Persistence and deduplication for feeds and items.

The registry table ``feeds`` holds one row per subscribed URL; format-specific
metadata and items live in rss_* / atom_* tables keyed by the registry id.
Deduplication rests on the per-feed natural-key uniqueness constraint:
items are inserted with ``ON CONFLICT DO NOTHING`` inside a ``BEGIN
IMMEDIATE`` transaction, and only rows that were actually inserted are
reported as new.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..config.settings import get_settings
from ..database.connection import DatabaseConnection
from ..database.models import (
    CanonicalFeed,
    CanonicalItem,
    Enclosure,
    FeedDescriptor,
    FeedFormat,
    FetchToken,
    ParsedFeed,
    SourceRef,
    Weekday,
    from_db_timestamp,
    to_db_timestamp,
)
from ..utils.exceptions import ErrorCode, StoreError
from ..utils.logging import get_logger_for_component


# Per-format table layout: (feed table, item table, natural-key column)
ITEM_TABLES = {
    FeedFormat.RSS: ("rss_feeds", "rss_items", "guid"),
    FeedFormat.ATOM: ("atom_feeds", "atom_items", "entry_id"),
}

# Columns rewritten when a known item is re-observed and refreshing is enabled
REFRESH_COLUMNS = {
    FeedFormat.RSS: ("title", "link", "description", "pub_date"),
    FeedFormat.ATOM: ("title", "link", "summary", "updated", "published"),
}


@dataclass
class CycleResult:
    """Outcome of one committed poll cycle."""

    feed_id: int
    new_items: List[CanonicalItem] = field(default_factory=list)


def _json_list(values: Sequence[Any]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def _json_model(model) -> Optional[str]:
    if model is None:
        return None
    return json.dumps(model.model_dump(exclude_none=True), ensure_ascii=False)


def _skip_hours_json(hours) -> str:
    return _json_list(sorted(hours))


def _skip_days_json(days) -> str:
    return _json_list([day.value for day in Weekday if day in days])


def _load_list(value: Optional[str]) -> List[Any]:
    return json.loads(value) if value else []


class FeedStore:
    """Transactional store for feed metadata and items."""

    def __init__(
        self,
        db_connection: DatabaseConnection,
        refresh_items_on_reobservation: Optional[bool] = None,
    ):
        """Initialize the store.

        Args:
            db_connection: Database connection manager
            refresh_items_on_reobservation: Update known items when they
                reappear (default from config)
        """
        self.db = db_connection
        self.logger = get_logger_for_component("feed_store")
        if refresh_items_on_reobservation is None:
            refresh_items_on_reobservation = (
                get_settings().store.refresh_items_on_reobservation
            )
        self.refresh_items_on_reobservation = refresh_items_on_reobservation

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def upsert_feed(self, feed: CanonicalFeed) -> int:
        """Insert a feed if its URL is unseen, otherwise refresh its metadata.

        Args:
            feed: Canonical feed metadata

        Returns:
            Feed ID

        Raises:
            StoreError: If the transaction fails
        """
        try:
            with self.db.transaction() as conn:
                return self._upsert_feed(conn, feed)
        except sqlite3.Error as e:
            raise StoreError(
                f"Failed to upsert feed {feed.url}: {e}",
                context={"feed_url": feed.url},
            ) from e

    def reconcile_items(
        self, feed_id: int, items: Sequence[CanonicalItem]
    ) -> List[CanonicalItem]:
        """Persist unseen items and return them; known items are dropped.

        Args:
            feed_id: Owning feed ID
            items: Candidate items in document order

        Returns:
            The new items, in input order, with their database IDs set

        Raises:
            StoreError: If the feed does not exist or the transaction fails
        """
        try:
            with self.db.transaction() as conn:
                feed_format = self._feed_format(conn, feed_id)
                if feed_format is None:
                    raise StoreError(
                        f"Feed {feed_id} does not exist",
                        feed_id=feed_id,
                        error_code=ErrorCode.RESOURCE_NOT_FOUND,
                        recoverable=False,
                    )
                return self._reconcile(conn, feed_id, feed_format, items)
        except sqlite3.Error as e:
            raise StoreError(
                f"Failed to reconcile items for feed {feed_id}: {e}", feed_id=feed_id
            ) from e

    def apply_cycle(
        self,
        feed_id: int,
        parsed: ParsedFeed,
        token: Optional[FetchToken],
        polled_at: datetime,
    ) -> Optional[CycleResult]:
        """Commit one successful poll cycle atomically.

        Metadata upsert, item reconciliation and the poll bookkeeping either
        all commit or all roll back.

        Args:
            feed_id: Feed being polled
            parsed: Parser output for the fetched document
            token: New conditional-fetch token
            polled_at: Time of the poll

        Returns:
            CycleResult, or None if the feed was unsubscribed meanwhile

        Raises:
            StoreError: If the transaction fails
        """
        token = token or FetchToken()
        try:
            with self.db.transaction() as conn:
                row = conn.execute(
                    "SELECT url FROM feeds WHERE id = ?", (feed_id,)
                ).fetchone()
                if row is None:
                    self.logger.info(
                        f"Feed {feed_id} disappeared before its cycle committed"
                    )
                    return None

                feed = parsed.feed
                if feed.url != row["url"]:
                    feed = feed.model_copy(update={"url": row["url"]})

                self._upsert_feed(conn, feed)
                new_items = self._reconcile(conn, feed_id, feed.format, parsed.items)

                conn.execute(
                    """
                    UPDATE feeds
                    SET last_polled_at = ?, last_success_at = ?,
                        etag = ?, last_modified = ?
                    WHERE id = ?
                """,
                    (
                        to_db_timestamp(polled_at),
                        to_db_timestamp(polled_at),
                        token.etag,
                        token.last_modified,
                        feed_id,
                    ),
                )

            self.logger.debug(
                f"Committed cycle for feed {feed_id}: "
                f"{len(new_items)}/{len(parsed.items)} new items"
            )
            return CycleResult(feed_id=feed_id, new_items=new_items)

        except sqlite3.Error as e:
            raise StoreError(
                f"Poll cycle for feed {feed_id} rolled back: {e}", feed_id=feed_id
            ) from e

    def mark_not_modified(self, feed_id: int, polled_at: datetime) -> bool:
        """Record a successful cycle that found the document unchanged."""
        return self._touch(
            "UPDATE feeds SET last_polled_at = ?, last_success_at = ? WHERE id = ?",
            (to_db_timestamp(polled_at), to_db_timestamp(polled_at), feed_id),
            feed_id,
        )

    def record_poll_attempt(self, feed_id: int, polled_at: datetime) -> bool:
        """Record the time of a failed poll attempt."""
        return self._touch(
            "UPDATE feeds SET last_polled_at = ? WHERE id = ?",
            (to_db_timestamp(polled_at), feed_id),
            feed_id,
        )

    def _touch(self, query: str, params: tuple, feed_id: int) -> bool:
        try:
            return self.db.execute_update(query, params) > 0
        except sqlite3.Error as e:
            raise StoreError(
                f"Failed to update poll bookkeeping for feed {feed_id}: {e}",
                feed_id=feed_id,
            ) from e

    # ------------------------------------------------------------------
    # Transaction-scoped helpers
    # ------------------------------------------------------------------

    def _feed_format(self, conn: sqlite3.Connection, feed_id: int) -> Optional[FeedFormat]:
        row = conn.execute("SELECT format FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return FeedFormat(row["format"]) if row else None

    def _upsert_feed(self, conn: sqlite3.Connection, feed: CanonicalFeed) -> int:
        registry = {
            "format": feed.format.value,
            "title": feed.title or "",
            "description": feed.description,
            "link": feed.link,
            "ttl": feed.ttl,
            "skip_hours": _skip_hours_json(feed.skip_hours),
            "skip_days": _skip_days_json(feed.skip_days),
        }

        row = conn.execute(
            "SELECT id, format FROM feeds WHERE url = ?", (feed.url,)
        ).fetchone()

        if row is None:
            columns = ["url"] + list(registry)
            cursor = conn.execute(
                f"INSERT INTO feeds ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [feed.url] + list(registry.values()),
            )
            feed_id = cursor.lastrowid
            self.logger.info(f"Created feed {feed_id}: {feed.url}")
        else:
            feed_id = row["id"]
            previous = FeedFormat(row["format"])
            if previous != feed.format:
                self.logger.warning(
                    f"Feed {feed_id} switched format {previous.value} -> {feed.format.value}"
                )
                conn.execute(
                    f"DELETE FROM {ITEM_TABLES[previous][0]} WHERE feed_id = ?",
                    (feed_id,),
                )
            assignments = ", ".join(f"{column} = ?" for column in registry)
            conn.execute(
                f"UPDATE feeds SET {assignments} WHERE id = ?",
                list(registry.values()) + [feed_id],
            )

        feed_table = ITEM_TABLES[feed.format][0]
        self._upsert_row(conn, feed_table, "feed_id", feed_id, self._format_row(feed))
        return feed_id

    def _format_row(self, feed: CanonicalFeed) -> Dict[str, Any]:
        if feed.format == FeedFormat.RSS:
            return {
                "title": feed.title or "",
                "link": feed.link or "",
                "description": feed.description,
                "language": feed.language,
                "copyright": feed.rights,
                "managing_editor": feed.managing_editor,
                "web_master": feed.web_master,
                "pub_date": to_db_timestamp(feed.published_at),
                "last_build_date": to_db_timestamp(feed.updated_at),
                "category": _json_list(feed.categories),
                "docs": feed.docs,
                "ttl": feed.ttl,
                "image": feed.image,
                "skip_hours": _skip_hours_json(feed.skip_hours),
                "skip_days": _skip_days_json(feed.skip_days),
            }
        return {
            "atom_id": feed.atom_id or feed.url,
            "title": feed.title or "",
            "updated": to_db_timestamp(feed.updated_at),
            "author": _json_list(feed.authors),
            "link": feed.link,
            "category": _json_list(feed.categories),
            "icon": feed.icon,
            "logo": feed.logo,
            "rights": feed.rights,
            "subtitle": feed.description,
        }

    def _upsert_row(
        self,
        conn: sqlite3.Connection,
        table: str,
        key: str,
        key_value: Any,
        values: Dict[str, Any],
    ) -> None:
        columns = [key] + list(values)
        updates = ", ".join(f"{column} = excluded.{column}" for column in values)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({key}) DO UPDATE SET {updates}",
            [key_value] + list(values.values()),
        )

    def _item_row(self, feed_format: FeedFormat, item: CanonicalItem) -> Dict[str, Any]:
        if feed_format == FeedFormat.RSS:
            return {
                "guid": item.natural_key,
                "title": item.title,
                "link": item.link,
                "description": item.body,
                "pub_date": to_db_timestamp(item.published_at),
                "author": item.author,
                "category": _json_list(item.categories),
                "comments": item.comments,
                "enclosure": _json_model(item.enclosure),
                "source": _json_model(item.source),
            }
        return {
            "entry_id": item.natural_key,
            "title": item.title,
            "link": item.link,
            "updated": to_db_timestamp(item.updated_at),
            "published": to_db_timestamp(item.published_at),
            "author": item.author,
            "contributor": _json_list(item.contributors),
            "category": _json_list(item.categories),
            "rights": item.rights,
            "source": _json_model(item.source),
            "summary": item.body,
        }

    def _reconcile(
        self,
        conn: sqlite3.Connection,
        feed_id: int,
        feed_format: FeedFormat,
        items: Sequence[CanonicalItem],
    ) -> List[CanonicalItem]:
        _, item_table, key_column = ITEM_TABLES[feed_format]
        new_items: List[CanonicalItem] = []
        refreshed = 0

        for item in items:
            row = self._item_row(feed_format, item)
            columns = ["feed_id"] + list(row)
            cursor = conn.execute(
                f"INSERT INTO {item_table} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(feed_id, {key_column}) DO NOTHING",
                [feed_id] + list(row.values()),
            )

            if cursor.rowcount == 1:
                new_items.append(item.model_copy(update={"id": cursor.lastrowid}))
            elif self.refresh_items_on_reobservation:
                refresh = REFRESH_COLUMNS[feed_format]
                assignments = ", ".join(f"{column} = ?" for column in refresh)
                conn.execute(
                    f"UPDATE {item_table} SET {assignments} "
                    f"WHERE feed_id = ? AND {key_column} = ?",
                    [row[column] for column in refresh] + [feed_id, item.natural_key],
                )
                refreshed += 1

        if refreshed:
            self.logger.debug(f"Refreshed {refreshed} known items of feed {feed_id}")
        return new_items

    # ------------------------------------------------------------------
    # Queries and registry maintenance
    # ------------------------------------------------------------------

    def get_feed(self, feed_id: int) -> Optional[FeedDescriptor]:
        """Get a feed descriptor by ID."""
        row = self._query_one("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return FeedDescriptor.from_db_row(row) if row else None

    def get_feed_by_url(self, url: str) -> Optional[FeedDescriptor]:
        """Get a feed descriptor by URL."""
        row = self._query_one("SELECT * FROM feeds WHERE url = ?", (url,))
        return FeedDescriptor.from_db_row(row) if row else None

    def list_feeds(self) -> List[FeedDescriptor]:
        """All subscribed feeds ordered by ID."""
        try:
            rows = self.db.execute_query("SELECT * FROM feeds ORDER BY id")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list feeds: {e}") from e
        return [FeedDescriptor.from_db_row(row) for row in rows]

    def get_canonical_feed(self, feed_id: int) -> Optional[CanonicalFeed]:
        """Rebuild the stored canonical metadata of a feed."""
        descriptor = self.get_feed(feed_id)
        if descriptor is None:
            return None
        feed_table = ITEM_TABLES[descriptor.format][0]
        row = self._query_one(f"SELECT * FROM {feed_table} WHERE feed_id = ?", (feed_id,))
        if row is None:
            return None

        if descriptor.format == FeedFormat.RSS:
            return CanonicalFeed(
                url=descriptor.url,
                format=FeedFormat.RSS,
                title=row["title"],
                description=row["description"],
                link=row["link"] or None,
                rights=row["copyright"],
                language=row["language"],
                managing_editor=row["managing_editor"],
                web_master=row["web_master"],
                categories=_load_list(row["category"]),
                image=row["image"],
                docs=row["docs"],
                ttl=row["ttl"],
                skip_hours=_load_list(row["skip_hours"]),
                skip_days=_load_list(row["skip_days"]),
                published_at=from_db_timestamp(row["pub_date"]),
                updated_at=from_db_timestamp(row["last_build_date"]),
            )
        return CanonicalFeed(
            url=descriptor.url,
            format=FeedFormat.ATOM,
            title=row["title"],
            description=row["subtitle"],
            link=row["link"],
            rights=row["rights"],
            authors=_load_list(row["author"]),
            categories=_load_list(row["category"]),
            atom_id=row["atom_id"],
            icon=row["icon"],
            logo=row["logo"],
            updated_at=from_db_timestamp(row["updated"]),
        )

    def update_feed_settings(
        self,
        feed_id: int,
        custom_title: Optional[str] = None,
        category: Optional[str] = None,
        url: Optional[str] = None,
    ) -> bool:
        """Change operator overrides. An empty string clears a value.

        Returns:
            True if the feed exists
        """
        fields: Dict[str, Any] = {}
        if custom_title is not None:
            fields["custom_title"] = custom_title or None
        if category is not None:
            fields["category"] = category or None
        if url:
            fields["url"] = url
            # A new URL invalidates the conditional-fetch token
            fields["etag"] = None
            fields["last_modified"] = None

        if not fields:
            return self.get_feed(feed_id) is not None

        assignments = ", ".join(f"{column} = ?" for column in fields)
        try:
            updated = self.db.execute_update(
                f"UPDATE feeds SET {assignments} WHERE id = ?",
                tuple(fields.values()) + (feed_id,),
            )
        except sqlite3.IntegrityError as e:
            raise StoreError(
                f"Cannot update feed {feed_id}: {e}",
                feed_id=feed_id,
                error_code=ErrorCode.DATABASE_CONSTRAINT,
                recoverable=False,
            ) from e
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update feed {feed_id}: {e}", feed_id=feed_id) from e

        if updated:
            self.logger.info(f"Updated settings of feed {feed_id}: {sorted(fields)}")
        return updated > 0

    def delete_feed(self, feed_id: int) -> bool:
        """Delete a feed; its metadata and items go with it by cascade.

        Returns:
            True if a feed was deleted
        """
        try:
            deleted = self.db.execute_update("DELETE FROM feeds WHERE id = ?", (feed_id,))
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete feed {feed_id}: {e}", feed_id=feed_id) from e

        if deleted:
            self.logger.info(f"Deleted feed {feed_id}")
        else:
            self.logger.warning(f"No feed found with ID {feed_id}")
        return deleted > 0

    def is_known_item(self, feed_id: int, natural_key: str) -> bool:
        """Whether an item with this natural key is already stored for the feed."""
        descriptor = self.get_feed(feed_id)
        if descriptor is None:
            return False
        _, item_table, key_column = ITEM_TABLES[descriptor.format]
        row = self._query_one(
            f"SELECT 1 FROM {item_table} WHERE feed_id = ? AND {key_column} = ?",
            (feed_id, natural_key),
        )
        return row is not None

    def count_items(self, feed_id: int) -> int:
        """Number of stored items of a feed, across both formats."""
        row = self._query_one(
            """
            SELECT (SELECT COUNT(*) FROM rss_items WHERE feed_id = ?)
                 + (SELECT COUNT(*) FROM atom_items WHERE feed_id = ?) AS total
        """,
            (feed_id, feed_id),
        )
        return row["total"] if row else 0

    def list_items(self, feed_id: int, limit: int = 50) -> List[CanonicalItem]:
        """Most recently discovered items of a feed."""
        descriptor = self.get_feed(feed_id)
        if descriptor is None:
            return []
        _, item_table, _ = ITEM_TABLES[descriptor.format]
        try:
            rows = self.db.execute_query(
                f"SELECT * FROM {item_table} WHERE feed_id = ? ORDER BY id DESC LIMIT ?",
                (feed_id, limit),
            )
        except sqlite3.Error as e:
            raise StoreError(f"Failed to list items: {e}", feed_id=feed_id) from e
        return [self._row_to_item(descriptor.format, row) for row in rows]

    def _row_to_item(self, feed_format: FeedFormat, row: sqlite3.Row) -> CanonicalItem:
        source = SourceRef(**json.loads(row["source"])) if row["source"] else None
        if feed_format == FeedFormat.RSS:
            enclosure = (
                Enclosure(**json.loads(row["enclosure"])) if row["enclosure"] else None
            )
            return CanonicalItem(
                id=row["id"],
                natural_key=row["guid"],
                title=row["title"],
                link=row["link"],
                body=row["description"],
                published_at=from_db_timestamp(row["pub_date"]),
                author=row["author"],
                categories=_load_list(row["category"]),
                comments=row["comments"],
                enclosure=enclosure,
                source=source,
            )
        return CanonicalItem(
            id=row["id"],
            natural_key=row["entry_id"],
            title=row["title"],
            link=row["link"],
            body=row["summary"],
            published_at=from_db_timestamp(row["published"]),
            updated_at=from_db_timestamp(row["updated"]),
            author=row["author"],
            contributors=_load_list(row["contributor"]),
            categories=_load_list(row["category"]),
            rights=row["rights"],
            source=source,
        )

    def _query_one(self, query: str, params: tuple) -> Optional[sqlite3.Row]:
        try:
            return self.db.execute_one(query, params)
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}") from e
