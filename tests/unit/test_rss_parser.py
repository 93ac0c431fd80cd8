"""
Tests for the RSS 2.0 parser and format detection.
"""

from datetime import datetime, timezone

import pytest

from feedpulse.database.models import FeedFormat, Weekday
from feedpulse.ingestion.parsers import detect_format, parse_feed
from feedpulse.ingestion.rss_parser import parse_rss
from feedpulse.utils.exceptions import ErrorCode, MalformedFeed

FEED_URL = "https://example.com/rss"
POLLED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestChannelMetadata:
    """Channel-level fields map onto CanonicalFeed."""

    def test_all_optional_fields(self, full_rss_feed):
        parsed = parse_rss(full_rss_feed, FEED_URL, POLLED_AT)
        feed = parsed.feed

        assert feed.url == FEED_URL
        assert feed.format == FeedFormat.RSS
        assert feed.title == "Full Channel"
        assert feed.link == "https://example.com/"
        assert feed.description == "Every field populated"
        assert feed.language == "en-us"
        assert feed.rights == "Copyright 2024 Example"
        assert "editor@example.com" in feed.managing_editor
        assert "webmaster@example.com" in feed.web_master
        assert feed.categories == ["Technology", "Science"]
        assert feed.image == "https://example.com/logo.png"
        assert feed.docs == "https://www.rssboard.org/rss-specification"
        assert feed.ttl == 45
        assert feed.published_at == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        assert feed.updated_at == datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)

    def test_skip_hours_treats_24_as_midnight(self, full_rss_feed):
        feed = parse_rss(full_rss_feed, FEED_URL, POLLED_AT).feed
        assert feed.skip_hours == {0, 1}

    def test_skip_days(self, full_rss_feed):
        feed = parse_rss(full_rss_feed, FEED_URL, POLLED_AT).feed
        assert feed.skip_days == {Weekday.SATURDAY, Weekday.SUNDAY}

    def test_minimal_channel_has_empty_hints(self, rss_document):
        feed = parse_rss(rss_document(["1"]), FEED_URL, POLLED_AT).feed
        assert feed.ttl is None
        assert feed.skip_hours == set()
        assert feed.skip_days == set()
        assert feed.published_at is None

    def test_invalid_hints_are_ignored(self, rss_document):
        extra = """
        <ttl>soon</ttl>
        <skipHours><hour>25</hour><hour>x</hour><hour>3</hour></skipHours>
        <skipDays><day>Caturday</day><day>monday</day></skipDays>"""
        feed = parse_rss(rss_document(["1"], extra_channel=extra), FEED_URL, POLLED_AT).feed
        assert feed.ttl is None
        assert feed.skip_hours == {3}
        assert feed.skip_days == {Weekday.MONDAY}


class TestItems:
    """Item-level fields map onto CanonicalItem."""

    def test_all_optional_item_fields(self, full_rss_feed):
        item = parse_rss(full_rss_feed, FEED_URL, POLLED_AT).items[0]

        assert item.natural_key == "item-1"
        assert item.title == "First Item"
        assert item.link == "https://example.com/items/1"
        assert "<b>world</b>" in item.body
        assert "writer@example.com" in item.author
        assert item.categories == ["News"]
        assert item.comments == "https://example.com/items/1#comments"
        assert item.enclosure.url == "https://example.com/audio/1.mp3"
        assert item.enclosure.length == 12345
        assert item.enclosure.mime_type == "audio/mpeg"
        assert item.source.url == "https://upstream.example.net/rss"
        assert item.source.title == "Upstream"
        assert item.published_at == datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)

    def test_link_is_key_without_guid(self, full_rss_feed):
        item = parse_rss(full_rss_feed, FEED_URL, POLLED_AT).items[1]
        assert item.natural_key == "https://example.com/items/2"

    def test_items_keep_document_order(self, rss_document):
        items = parse_rss(rss_document(["3", "1", "2"]), FEED_URL, POLLED_AT).items
        assert [item.natural_key for item in items] == ["3", "1", "2"]

    def test_item_without_guid_or_link_is_skipped(self, rss_document):
        extra = "<item><title>Orphan</title></item>"
        parsed = parse_rss(rss_document(["1"], extra_channel=extra), FEED_URL, POLLED_AT)
        assert [item.natural_key for item in parsed.items] == ["1"]

    def test_unparseable_date_becomes_poll_time(self, rss_document):
        extra = """
        <item><guid>bad-date</guid><pubDate>not a date at all</pubDate></item>"""
        item = parse_rss(rss_document([], extra_channel=extra), FEED_URL, POLLED_AT).items[0]
        assert item.published_at == POLLED_AT

    def test_absent_date_stays_none(self, rss_document):
        item = parse_rss(rss_document(["1"]), FEED_URL, POLLED_AT).items[0]
        assert item.published_at is None

    def test_bare_guid_is_not_a_link(self):
        body = b"""<rss version="2.0"><channel><link>https://example.com/</link>
            <item><title>One</title><guid>1</guid></item>
            <item><title>Two</title><guid>2</guid></item>
        </channel></rss>"""
        items = parse_rss(body, FEED_URL, POLLED_AT).items

        assert [item.natural_key for item in items] == ["1", "2"]
        assert [item.link for item in items] == [None, None]

    @pytest.mark.parametrize("guid_xml, expected", [
        ("<guid>https://example.com/p/1</guid>", "https://example.com/p/1"),
        ('<guid isPermaLink="true">/p/1</guid>', "/p/1"),
        ('<guid isPermaLink="false">https://example.com/p/1</guid>', None),
    ])
    def test_permalink_guid_as_link(self, guid_xml, expected):
        body = f"""<rss version="2.0"><channel><link>https://example.com/</link>
            <item><title>One</title>{guid_xml}</item>
        </channel></rss>""".encode("utf-8")
        item = parse_rss(body, FEED_URL, POLLED_AT).items[0]
        assert item.link == expected

    def test_explicit_link_wins_over_guid(self):
        body = b"""<rss version="2.0"><channel><link>https://example.com/</link>
            <item><guid>https://example.com/p/1</guid><link>https://example.com/posts/one</link></item>
        </channel></rss>"""
        item = parse_rss(body, FEED_URL, POLLED_AT).items[0]
        assert item.link == "https://example.com/posts/one"
        assert item.natural_key == "https://example.com/p/1"


class TestRejection:
    """Documents that are not usable RSS raise MalformedFeed."""

    def test_not_well_formed(self):
        with pytest.raises(MalformedFeed) as exc_info:
            parse_rss(b"<rss><channel>", FEED_URL, POLLED_AT)
        assert exc_info.value.error_code == ErrorCode.FEED_NOT_WELL_FORMED

    def test_empty_document(self):
        with pytest.raises(MalformedFeed) as exc_info:
            parse_rss(b"   ", FEED_URL, POLLED_AT)
        assert exc_info.value.error_code == ErrorCode.FEED_NOT_WELL_FORMED

    def test_wrong_root(self, atom_document):
        with pytest.raises(MalformedFeed) as exc_info:
            parse_rss(atom_document(["a"]), FEED_URL, POLLED_AT)
        assert exc_info.value.error_code == ErrorCode.FEED_WRONG_ROOT

    def test_missing_channel_link(self):
        body = b"""<rss version="2.0"><channel><title>No link</title></channel></rss>"""
        with pytest.raises(MalformedFeed) as exc_info:
            parse_rss(body, FEED_URL, POLLED_AT)
        assert exc_info.value.error_code == ErrorCode.FEED_MISSING_FIELD
        assert exc_info.value.context["field_name"] == "channel/link"

    def test_malformed_feed_is_not_recoverable(self):
        with pytest.raises(MalformedFeed) as exc_info:
            parse_rss(b"garbage", FEED_URL, POLLED_AT)
        assert exc_info.value.recoverable is False


class TestFormatDispatch:
    """detect_format and parse_feed route documents by root element."""

    def test_detects_rss(self, rss_document):
        assert detect_format(rss_document(["1"])) == FeedFormat.RSS

    def test_detects_atom(self, atom_document):
        assert detect_format(atom_document(["a"])) == FeedFormat.ATOM

    def test_rejects_other_roots(self):
        with pytest.raises(MalformedFeed) as exc_info:
            detect_format(b"<html><body/></html>", FEED_URL)
        assert exc_info.value.error_code == ErrorCode.FEED_WRONG_ROOT

    def test_parse_feed_uses_stored_format(self, rss_document):
        parsed = parse_feed(FeedFormat.RSS, rss_document(["1", "2"]), FEED_URL, POLLED_AT)
        assert len(parsed.items) == 2

    def test_parse_feed_accepts_format_value(self, atom_document):
        parsed = parse_feed("atom", atom_document(["a"]), FEED_URL, POLLED_AT)
        assert parsed.feed.format == FeedFormat.ATOM
