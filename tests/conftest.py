"""
PyTest Configuration and Fixtures
=================================

Shared fixtures and configuration for FeedPulse tests.

- Temp-file SQLite databases built through DatabaseSchema
- Store, settings and fetcher fixtures
- RSS/Atom document builders
"""

import pytest
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment variables before any imports
os.environ["FEEDPULSE_TELEGRAM__BOT_TOKEN"] = (
    "123456:ABC-DEF1234ghIkl-zyx57W2v1u123ew11_test"
)
os.environ["FEEDPULSE_TELEGRAM__CHAT_ID"] = "-1001234567890"
os.environ["FEEDPULSE_FETCH__ALLOW_PRIVATE_HOSTS"] = "true"
os.environ["FEEDPULSE_DEBUG"] = "true"


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def test_database(tmp_path):
    """Fresh temp-file database with the full schema."""
    from feedpulse.database.schema import DatabaseSchema

    db_path = tmp_path / "feedpulse_test.db"
    DatabaseSchema(str(db_path)).create_tables()
    return str(db_path)


@pytest.fixture
def db_connection(test_database):
    """Create a database connection manager for testing."""
    from feedpulse.database.connection import DatabaseConnection

    connection = DatabaseConnection(test_database, pool_size=2)
    yield connection

    # Cleanup connections
    connection.close_all_connections()


@pytest.fixture
def feed_store(db_connection):
    """Feed store without item refresh."""
    from feedpulse.storage.feed_store import FeedStore

    return FeedStore(db_connection, refresh_items_on_reobservation=False)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def polling_settings():
    """Deterministic polling settings (no jitter)."""
    from feedpulse.config.settings import PollingSettings

    return PollingSettings(
        default_interval_minutes=10,
        min_interval_minutes=5,
        workers=2,
        tick_seconds=0.05,
        backoff_base_seconds=60,
        backoff_max_seconds=600,
        backoff_jitter=0.0,
    )


@pytest.fixture
def fetch_settings():
    """Fetch settings that accept local test servers."""
    from feedpulse.config.settings import FetchSettings

    return FetchSettings(
        request_timeout=2.0,
        max_redirects=3,
        max_body_bytes=64 * 1024,
        allow_private_hosts=True,
    )


# ============================================================================
# Fakes
# ============================================================================


class RecordingSink:
    """Event sink that remembers every event."""

    def __init__(self, result=True, error=None):
        self.events = []
        self.result = result
        self.error = error
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def emit(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.result


class ScriptedFetcher:
    """Fetcher returning queued outcomes; an exception instance is raised."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    @asynccontextmanager
    async def get_session(self):
        yield None

    async def fetch(self, url, token, session):
        self.calls.append((url, token))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def sink_factory():
    """Factory for RecordingSink instances with a chosen result or error."""
    return RecordingSink


@pytest.fixture
def scripted_fetcher():
    """Factory for ScriptedFetcher instances."""
    return ScriptedFetcher


# ============================================================================
# Feed Documents
# ============================================================================


def build_rss(guids, link="https://example.com/", extra_channel="", title="Example"):
    """Minimal RSS 2.0 document with one item per guid."""
    items = "".join(
        f"""
        <item>
            <title>Item {guid}</title>
            <link>https://example.com/items/{guid}</link>
            <guid isPermaLink="false">{guid}</guid>
            <description>Body of item {guid}</description>
        </item>"""
        for guid in guids
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
    <channel>
        <title>{title}</title>
        <link>{link}</link>
        <description>Example feed</description>{extra_channel}{items}
    </channel>
</rss>""".encode("utf-8")


def build_atom(entry_ids, title="Example Atom"):
    """Minimal Atom 1.0 document with one entry per id."""
    entries = "".join(
        f"""
    <entry>
        <id>{entry_id}</id>
        <title>Entry {entry_id}</title>
        <link rel="alternate" href="https://example.org/entries/{entry_id}"/>
        <updated>2024-01-02T10:00:00Z</updated>
        <summary>Summary of {entry_id}</summary>
    </entry>"""
        for entry_id in entry_ids
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
    <id>urn:example:feed</id>
    <title>{title}</title>
    <link rel="alternate" href="https://example.org/"/>
    <updated>2024-01-02T10:00:00Z</updated>{entries}
</feed>""".encode("utf-8")


@pytest.fixture
def rss_document():
    """Builder for RSS documents: rss_document(["1", "2"])."""
    return build_rss


@pytest.fixture
def atom_document():
    """Builder for Atom documents: atom_document(["a", "b"])."""
    return build_atom


@pytest.fixture
def full_rss_feed():
    """RSS document populating every optional channel and item field."""
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
    <channel>
        <title>Full Channel</title>
        <link>https://example.com/</link>
        <description>Every field populated</description>
        <language>en-us</language>
        <copyright>Copyright 2024 Example</copyright>
        <managingEditor>editor@example.com (Ed Itor)</managingEditor>
        <webMaster>webmaster@example.com (Web Master)</webMaster>
        <pubDate>Mon, 01 Jan 2024 08:00:00 GMT</pubDate>
        <lastBuildDate>Tue, 02 Jan 2024 09:30:00 GMT</lastBuildDate>
        <category>Technology</category>
        <category>Science</category>
        <docs>https://www.rssboard.org/rss-specification</docs>
        <ttl>45</ttl>
        <image>
            <url>https://example.com/logo.png</url>
            <title>Full Channel</title>
            <link>https://example.com/</link>
        </image>
        <skipHours>
            <hour>0</hour>
            <hour>1</hour>
            <hour>24</hour>
        </skipHours>
        <skipDays>
            <day>Saturday</day>
            <day>Sunday</day>
        </skipDays>
        <item>
            <title>First Item</title>
            <link>https://example.com/items/1</link>
            <description>&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;</description>
            <author>writer@example.com (Wri Ter)</author>
            <category>News</category>
            <comments>https://example.com/items/1#comments</comments>
            <enclosure url="https://example.com/audio/1.mp3" length="12345" type="audio/mpeg"/>
            <guid isPermaLink="false">item-1</guid>
            <pubDate>Mon, 01 Jan 2024 07:00:00 GMT</pubDate>
            <source url="https://upstream.example.net/rss">Upstream</source>
        </item>
        <item>
            <title>Linked Item</title>
            <link>https://example.com/items/2</link>
        </item>
    </channel>
</rss>"""


@pytest.fixture
def full_atom_feed():
    """Atom document populating every optional feed and entry field."""
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom" xml:lang="en">
    <id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>
    <title>Full Atom</title>
    <subtitle>Every field populated</subtitle>
    <link rel="self" href="https://example.org/feed.atom"/>
    <link rel="alternate" href="https://example.org/"/>
    <updated>2024-03-04T05:06:07Z</updated>
    <author><name>Alice</name><email>alice@example.org</email></author>
    <author><name>Bob</name></author>
    <category term="python"/>
    <icon>https://example.org/favicon.ico</icon>
    <logo>https://example.org/logo.png</logo>
    <rights>CC BY 4.0</rights>
    <entry>
        <id>urn:uuid:1225c695-cfb8-4ebb-aaaa-80da344efa6a</id>
        <title>Atom Entry</title>
        <link rel="alternate" href="https://example.org/entries/1"/>
        <published>2024-03-01T12:00:00Z</published>
        <updated>2024-03-02T12:00:00Z</updated>
        <author><name>Alice</name></author>
        <contributor><name>Carol</name></contributor>
        <category term="release"/>
        <rights>All rights reserved</rights>
        <summary>Short summary</summary>
        <source>
            <id>urn:example:upstream</id>
            <title>Upstream Atom</title>
            <link rel="alternate" href="https://upstream.example.net/"/>
        </source>
    </entry>
    <entry>
        <id>yt:video:dQw4w9WgXcQ</id>
        <title>Video Entry</title>
        <updated>2024-03-03T12:00:00Z</updated>
        <content type="html">&lt;p&gt;Content only&lt;/p&gt;</content>
    </entry>
</feed>"""
