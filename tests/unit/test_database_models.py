"""
Tests for the canonical data models and timestamp helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from feedpulse.database.models import (
    CanonicalFeed,
    CanonicalItem,
    FeedDescriptor,
    FeedFormat,
    FetchToken,
    Weekday,
    from_db_timestamp,
    to_db_timestamp,
)


class TestWeekday:

    def test_parse_is_case_insensitive(self):
        assert Weekday.parse(" sunday ") == Weekday.SUNDAY
        assert Weekday.parse("Caturday") is None

    def test_from_datetime(self):
        assert Weekday.from_datetime(datetime(2024, 6, 1)) == Weekday.SATURDAY


class TestCanonicalFeed:

    def test_skip_sets_are_cleaned(self):
        feed = CanonicalFeed(
            url="https://example.com/rss",
            format=FeedFormat.RSS,
            skip_hours=[0, "5", 24, -1, "x"],
            skip_days=["monday", "Funday", Weekday.FRIDAY],
        )
        assert feed.skip_hours == {0, 5}
        assert feed.skip_days == {Weekday.MONDAY, Weekday.FRIDAY}

    def test_negative_ttl_rejected(self):
        with pytest.raises(PydanticValidationError):
            CanonicalFeed(url="https://example.com/rss", format="rss", ttl=-5)


class TestCanonicalItem:

    def test_natural_key_required(self):
        with pytest.raises(PydanticValidationError):
            CanonicalItem(natural_key="")

    def test_timestamp_prefers_published(self):
        published = datetime(2024, 1, 1, tzinfo=timezone.utc)
        updated = published + timedelta(days=1)
        assert CanonicalItem(natural_key="a", published_at=published, updated_at=updated).timestamp == published
        assert CanonicalItem(natural_key="a", updated_at=updated).timestamp == updated


class TestFeedDescriptor:

    def test_from_db_row(self):
        row = {
            "id": 1,
            "url": "https://example.com/rss",
            "format": "rss",
            "title": "Example",
            "custom_title": None,
            "category": None,
            "description": None,
            "link": "https://example.com/",
            "ttl": 30,
            "skip_hours": "[1, 2]",
            "skip_days": '["Sunday"]',
            "etag": '"e"',
            "last_modified": None,
            "last_polled_at": "2024-06-01T12:00:00+00:00",
            "last_success_at": None,
            "created_at": "2024-06-01 11:00:00",
        }
        descriptor = FeedDescriptor.from_db_row(row)

        assert descriptor.format == FeedFormat.RSS
        assert descriptor.skip_hours == {1, 2}
        assert descriptor.skip_days == {Weekday.SUNDAY}
        assert descriptor.last_polled_at == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert descriptor.created_at.tzinfo is not None
        assert descriptor.token == FetchToken(etag='"e"')
        assert descriptor.display_title == "Example"

    def test_display_title_fallbacks(self):
        descriptor = FeedDescriptor(id=1, url="https://example.com/rss", format="atom")
        assert descriptor.display_title == "https://example.com/rss"
        descriptor.custom_title = "Mine"
        assert descriptor.display_title == "Mine"


class TestTimestamps:

    def test_naive_values_are_utc(self):
        naive = datetime(2024, 6, 1, 12, 0)
        assert to_db_timestamp(naive) == "2024-06-01T12:00:00+00:00"

    def test_offset_converted_to_utc(self):
        local = datetime(2024, 6, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert from_db_timestamp(to_db_timestamp(local)) == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_none(self):
        assert to_db_timestamp(None) is None
        assert from_db_timestamp(None) is None
        assert FetchToken().is_empty()
