"""
Tests for FeedStore: metadata upsert, item reconciliation and cycle commits.
"""

import sqlite3
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from feedpulse.database.models import (
    CanonicalFeed,
    CanonicalItem,
    FeedFormat,
    FetchToken,
    ParsedFeed,
    Weekday,
)
from feedpulse.ingestion.atom_parser import parse_atom
from feedpulse.ingestion.rss_parser import parse_rss
from feedpulse.storage.feed_store import FeedStore
from feedpulse.utils.exceptions import ErrorCode, StoreError

POLLED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def rss_feed(url="https://example.com/rss", **kwargs):
    return CanonicalFeed(url=url, format=FeedFormat.RSS, title="Example",
                         link="https://example.com/", **kwargs)


def items(*keys):
    return [CanonicalItem(natural_key=key, title=f"Item {key}") for key in keys]


class TestUpsertFeed:

    def test_insert_then_update_keeps_single_row(self, feed_store):
        first_id = feed_store.upsert_feed(rss_feed(ttl=30))
        second_id = feed_store.upsert_feed(rss_feed(ttl=60, skip_hours={3}))

        assert first_id == second_id
        feeds = feed_store.list_feeds()
        assert len(feeds) == 1
        assert feeds[0].ttl == 60
        assert feeds[0].skip_hours == {3}

    def test_operator_overrides_survive_refresh(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.update_feed_settings(feed_id, custom_title="Mine", category="news")

        feed_store.upsert_feed(rss_feed().model_copy(update={"title": "Publisher Title"}))

        descriptor = feed_store.get_feed(feed_id)
        assert descriptor.title == "Publisher Title"
        assert descriptor.custom_title == "Mine"
        assert descriptor.category == "news"
        assert descriptor.display_title == "Mine"

    def test_rss_metadata_round_trip(self, feed_store, full_rss_feed):
        parsed = parse_rss(full_rss_feed, "https://example.com/rss", POLLED_AT)
        feed_id = feed_store.upsert_feed(parsed.feed)

        stored = feed_store.get_canonical_feed(feed_id)
        assert stored == parsed.feed

    def test_atom_metadata_round_trip(self, feed_store, full_atom_feed):
        parsed = parse_atom(full_atom_feed, "https://example.org/feed.atom", POLLED_AT)
        feed_id = feed_store.upsert_feed(parsed.feed)

        stored = feed_store.get_canonical_feed(feed_id)
        assert stored.atom_id == parsed.feed.atom_id
        assert stored.authors == ["Alice", "Bob"]
        assert stored.icon == parsed.feed.icon
        assert stored.logo == parsed.feed.logo
        assert stored.updated_at == parsed.feed.updated_at

    def test_skip_days_persist_as_names(self, feed_store, db_connection):
        feed_id = feed_store.upsert_feed(rss_feed(skip_days={Weekday.SUNDAY, Weekday.MONDAY}))
        row = db_connection.execute_one("SELECT skip_days FROM feeds WHERE id = ?", (feed_id,))
        assert row["skip_days"] == '["Monday", "Sunday"]'


class TestReconcileItems:

    def test_returns_only_unseen_items_in_order(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())

        first = feed_store.reconcile_items(feed_id, items("1", "2"))
        second = feed_store.reconcile_items(feed_id, items("3", "1", "2", "4"))

        assert [item.natural_key for item in first] == ["1", "2"]
        assert [item.natural_key for item in second] == ["3", "4"]
        assert all(item.id is not None for item in first + second)

    def test_idempotent(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.reconcile_items(feed_id, items("1", "2"))

        assert feed_store.reconcile_items(feed_id, items("1", "2")) == []
        assert feed_store.count_items(feed_id) == 2

    def test_duplicate_keys_within_one_batch(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        new = feed_store.reconcile_items(feed_id, items("1", "1"))
        assert [item.natural_key for item in new] == ["1"]
        assert feed_store.count_items(feed_id) == 1

    def test_same_key_in_different_feeds(self, feed_store):
        a = feed_store.upsert_feed(rss_feed("https://a.example.com/rss"))
        b = feed_store.upsert_feed(rss_feed("https://b.example.com/rss"))

        assert len(feed_store.reconcile_items(a, items("1"))) == 1
        assert len(feed_store.reconcile_items(b, items("1"))) == 1

    def test_known_items_unchanged_by_default(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.reconcile_items(feed_id, [CanonicalItem(natural_key="1", title="Old")])
        feed_store.reconcile_items(feed_id, [CanonicalItem(natural_key="1", title="New")])

        assert feed_store.list_items(feed_id)[0].title == "Old"

    def test_refresh_on_reobservation(self, db_connection):
        store = FeedStore(db_connection, refresh_items_on_reobservation=True)
        feed_id = store.upsert_feed(rss_feed())
        store.reconcile_items(feed_id, [CanonicalItem(natural_key="1", title="Old")])

        new = store.reconcile_items(feed_id, [CanonicalItem(natural_key="1", title="New")])

        assert new == []
        assert store.list_items(feed_id)[0].title == "New"

    def test_unknown_feed(self, feed_store):
        with pytest.raises(StoreError) as exc_info:
            feed_store.reconcile_items(999, items("1"))
        assert exc_info.value.error_code == ErrorCode.RESOURCE_NOT_FOUND

    def test_item_fields_round_trip(self, feed_store, full_rss_feed):
        parsed = parse_rss(full_rss_feed, "https://example.com/rss", POLLED_AT)
        feed_id = feed_store.upsert_feed(parsed.feed)
        feed_store.reconcile_items(feed_id, parsed.items[:1])

        stored = feed_store.list_items(feed_id)[0]
        original = parsed.items[0]
        assert stored.model_dump(exclude={"id"}) == original.model_dump(exclude={"id"})

    def test_atom_items(self, feed_store, full_atom_feed):
        parsed = parse_atom(full_atom_feed, "https://example.org/feed.atom", POLLED_AT)
        feed_id = feed_store.upsert_feed(parsed.feed)

        new = feed_store.reconcile_items(feed_id, parsed.items)

        assert len(new) == 2
        assert feed_store.is_known_item(feed_id, "yt:video:dQw4w9WgXcQ")
        stored = {item.natural_key: item for item in feed_store.list_items(feed_id)}
        assert stored["yt:video:dQw4w9WgXcQ"].link == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
        assert stored[parsed.items[0].natural_key].contributors == ["Carol"]


class TestApplyCycle:

    def test_commits_metadata_items_and_token(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        parsed = ParsedFeed(feed=rss_feed(ttl=15), items=items("1", "2"))

        result = feed_store.apply_cycle(
            feed_id, parsed, FetchToken(etag='"v1"', last_modified="Sat, 01 Jun 2024 12:00:00 GMT"), POLLED_AT
        )

        assert [item.natural_key for item in result.new_items] == ["1", "2"]
        descriptor = feed_store.get_feed(feed_id)
        assert descriptor.ttl == 15
        assert descriptor.etag == '"v1"'
        assert descriptor.last_modified == "Sat, 01 Jun 2024 12:00:00 GMT"
        assert descriptor.last_polled_at == POLLED_AT
        assert descriptor.last_success_at == POLLED_AT

    def test_returns_none_for_deleted_feed(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.delete_feed(feed_id)

        result = feed_store.apply_cycle(feed_id, ParsedFeed(feed=rss_feed(), items=items("1")), None, POLLED_AT)

        assert result is None
        assert feed_store.get_feed_by_url("https://example.com/rss") is None

    def test_failure_rolls_back_everything(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        parsed = ParsedFeed(feed=rss_feed(ttl=99), items=items("1", "2"))

        with patch.object(
            FeedStore, "_reconcile", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with pytest.raises(StoreError):
                feed_store.apply_cycle(feed_id, parsed, FetchToken(etag="x"), POLLED_AT)

        descriptor = feed_store.get_feed(feed_id)
        assert descriptor.ttl is None
        assert descriptor.etag is None
        assert descriptor.last_polled_at is None
        assert feed_store.count_items(feed_id) == 0

    def test_store_error_is_retryable(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        with patch.object(FeedStore, "_reconcile", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(StoreError) as exc_info:
                feed_store.apply_cycle(feed_id, ParsedFeed(feed=rss_feed()), None, POLLED_AT)
        assert exc_info.value.recoverable is True
        assert exc_info.value.context["feed_id"] == feed_id


class TestRegistry:

    def test_poll_bookkeeping(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())

        assert feed_store.record_poll_attempt(feed_id, POLLED_AT)
        descriptor = feed_store.get_feed(feed_id)
        assert descriptor.last_polled_at == POLLED_AT
        assert descriptor.last_success_at is None

        assert feed_store.mark_not_modified(feed_id, POLLED_AT)
        assert feed_store.get_feed(feed_id).last_success_at == POLLED_AT

    def test_delete_cascades_to_items(self, feed_store, db_connection):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.reconcile_items(feed_id, items("1", "2"))

        assert feed_store.delete_feed(feed_id)

        assert feed_store.get_feed(feed_id) is None
        assert db_connection.execute_one("SELECT COUNT(*) AS n FROM rss_items")["n"] == 0
        assert db_connection.execute_one("SELECT COUNT(*) AS n FROM rss_feeds")["n"] == 0

    def test_delete_unknown_feed(self, feed_store):
        assert feed_store.delete_feed(12345) is False

    def test_url_change_clears_token(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.apply_cycle(feed_id, ParsedFeed(feed=rss_feed()), FetchToken(etag="e"), POLLED_AT)

        feed_store.update_feed_settings(feed_id, url="https://example.com/new-rss")

        descriptor = feed_store.get_feed(feed_id)
        assert descriptor.url == "https://example.com/new-rss"
        assert descriptor.etag is None

    def test_url_conflict(self, feed_store):
        feed_store.upsert_feed(rss_feed("https://a.example.com/rss"))
        b = feed_store.upsert_feed(rss_feed("https://b.example.com/rss"))

        with pytest.raises(StoreError) as exc_info:
            feed_store.update_feed_settings(b, url="https://a.example.com/rss")
        assert exc_info.value.error_code == ErrorCode.DATABASE_CONSTRAINT

    def test_empty_string_clears_override(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        feed_store.update_feed_settings(feed_id, custom_title="Mine")
        feed_store.update_feed_settings(feed_id, custom_title="")
        assert feed_store.get_feed(feed_id).custom_title is None

    def test_get_feed_by_url(self, feed_store):
        feed_id = feed_store.upsert_feed(rss_feed())
        assert feed_store.get_feed_by_url("https://example.com/rss").id == feed_id
        assert feed_store.get_feed_by_url("https://nowhere.example.com/") is None
