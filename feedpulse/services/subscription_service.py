"""
Subscription Service
====================

Operator-facing subscription management shared by the CLI and the daemon.

Features:
- Subscribe with validation, duplicate check and a probe fetch
- Unsubscribe with cascade delete
- Title/category/URL overrides that survive metadata refresh
- Immediate reload of one or all feeds
- OPML import and export
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..config.settings import FetchSettings, get_settings
from ..database.models import FeedDescriptor, ParsedFeed
from ..ingestion.fetcher import FeedFetcher, NotModified
from ..ingestion.opml import OPMLOutline, generate_opml, parse_opml
from ..ingestion.parsers import detect_format, parse_feed
from ..scheduler.poll_scheduler import PollScheduler
from ..storage.feed_store import FeedStore
from ..utils.exceptions import (
    ErrorCode,
    FeedError,
    FeedPulseError,
    SubscriptionError,
)
from ..utils.logging import get_logger_for_component
from ..utils.validators import URLValidator


@dataclass
class ImportReport:
    """Summary of an OPML import."""
    subscribed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.subscribed) + len(self.skipped) + len(self.failed)


class SubscriptionService:
    """Adds, edits and removes feed subscriptions."""

    def __init__(
        self,
        store: FeedStore,
        fetcher: FeedFetcher,
        scheduler: Optional[PollScheduler] = None,
        fetch_settings: Optional[FetchSettings] = None,
    ):
        """Initialize the subscription service.

        Args:
            store: Feed store
            fetcher: Fetcher used for the probe fetch on subscribe
            scheduler: Running scheduler to keep in sync (optional)
            fetch_settings: Fetch settings (default from config)
        """
        self.store = store
        self.fetcher = fetcher
        self.scheduler = scheduler
        self.fetch_settings = fetch_settings or get_settings().fetch
        self.logger = get_logger_for_component("subscriptions")

    def _validate_url(self, url: str) -> str:
        return URLValidator.validate_feed_url(
            url, allow_private_hosts=self.fetch_settings.allow_private_hosts
        )

    def _require_feed(self, feed_id: int) -> FeedDescriptor:
        descriptor = self.store.get_feed(feed_id)
        if descriptor is None:
            raise SubscriptionError(
                f"No feed with ID {feed_id}",
                feed_id=feed_id,
                error_code=ErrorCode.RESOURCE_NOT_FOUND,
            )
        return descriptor

    async def _probe(self, feed_url: str, session=None) -> ParsedFeed:
        """Fetch and parse a feed once, without storing anything."""
        if session is None:
            async with self.fetcher.get_session() as own_session:
                fetched = await self.fetcher.fetch(feed_url, None, own_session)
        else:
            fetched = await self.fetcher.fetch(feed_url, None, session)

        if isinstance(fetched, NotModified):
            raise FeedError("Server answered 304 to an unconditional request", feed_url=feed_url)

        polled_at = datetime.now(timezone.utc)
        feed_format = detect_format(fetched.body, feed_url)
        return parse_feed(feed_format, fetched.body, feed_url, polled_at)

    async def subscribe(
        self, url: str, category: Optional[str] = None, session=None
    ) -> FeedDescriptor:
        """Subscribe to a feed.

        The document is fetched and parsed once to learn its format and
        metadata. Its items are not stored, so the first scheduled poll
        reports all of them as new.

        Args:
            url: Feed URL
            category: Operator grouping label
            session: aiohttp session to reuse (optional)

        Returns:
            The stored feed descriptor

        Raises:
            ValidationError: Invalid URL
            SubscriptionError: URL already subscribed
            FeedError: Fetch failure or malformed document
        """
        feed_url = self._validate_url(url)

        if self.store.get_feed_by_url(feed_url) is not None:
            raise SubscriptionError(
                f"Already subscribed to {feed_url}",
                error_code=ErrorCode.DUPLICATE_RESOURCE,
                context={"feed_url": feed_url},
            )

        self.logger.info(f"Subscribing to {feed_url}")
        parsed = await self._probe(feed_url, session)
        polled_at = datetime.now(timezone.utc)

        feed_id = self.store.upsert_feed(parsed.feed)
        if category:
            self.store.update_feed_settings(feed_id, category=category)
        descriptor = self.store.get_feed(feed_id)

        if self.scheduler is not None:
            self.scheduler.register(descriptor, due_at=polled_at)

        self.logger.info(
            f"Subscribed to {parsed.feed.format.value} feed {feed_id} '{descriptor.display_title}' "
            f"({len(parsed.items)} items pending first poll)"
        )
        return descriptor

    async def unsubscribe(self, feed_id: int) -> FeedDescriptor:
        """Remove a feed together with its items.

        Raises:
            SubscriptionError: Unknown feed ID
        """
        descriptor = self._require_feed(feed_id)
        if self.scheduler is not None:
            self.scheduler.unregister(feed_id)
        self.store.delete_feed(feed_id)
        self.logger.info(f"Unsubscribed from {descriptor.url}")
        return descriptor

    async def edit_feed(
        self,
        feed_id: int,
        title: Optional[str] = None,
        category: Optional[str] = None,
        url: Optional[str] = None,
        session=None,
    ) -> FeedDescriptor:
        """Change a feed's title override, category or URL.

        An empty string clears the title override or the category. A new URL
        is fetched once before anything is stored, so the feed's format and
        metadata follow the new document.

        Raises:
            SubscriptionError: Unknown feed ID, or URL taken by another feed
            ValidationError: Invalid URL
            FeedError: The new URL cannot be fetched or parsed
        """
        current = self._require_feed(feed_id)

        new_url = None
        if url:
            new_url = self._validate_url(url)
            if new_url == current.url:
                new_url = None
            else:
                other = self.store.get_feed_by_url(new_url)
                if other is not None:
                    raise SubscriptionError(
                        f"URL {new_url} already belongs to feed {other.id}",
                        feed_id=feed_id,
                        error_code=ErrorCode.DUPLICATE_RESOURCE,
                    )

        parsed = await self._probe(new_url, session) if new_url else None

        self.store.update_feed_settings(
            feed_id, custom_title=title, category=category, url=new_url
        )
        if parsed is not None:
            self.store.upsert_feed(parsed.feed)
            if parsed.feed.format != current.format:
                self.logger.info(
                    f"Feed {feed_id} is now {parsed.feed.format.value} after moving to {new_url}"
                )
        descriptor = self._require_feed(feed_id)

        if self.scheduler is not None:
            due_at = datetime.now(timezone.utc) if new_url else None
            self.scheduler.register(descriptor, due_at=due_at)

        return descriptor

    def reload(self, feed_id: Optional[int] = None) -> int:
        """Make one feed, or all feeds, due for polling now.

        Returns:
            Number of feeds made due
        """
        if feed_id is not None:
            self._require_feed(feed_id)
        if self.scheduler is None:
            self.logger.warning("Reload requested without a running scheduler")
            return 0
        return self.scheduler.trigger(feed_id)

    def list_feeds(self) -> List[FeedDescriptor]:
        return self.store.list_feeds()

    async def import_opml(self, data: bytes) -> ImportReport:
        """Subscribe to every feed listed in an OPML document.

        Raises:
            ValidationError: The document is not OPML
        """
        outlines = parse_opml(data)
        report = ImportReport()

        async with self.fetcher.get_session() as session:
            for outline in outlines:
                try:
                    await self.subscribe(outline.xml_url, category=outline.category, session=session)
                    report.subscribed.append(outline.xml_url)
                except SubscriptionError as e:
                    if e.error_code != ErrorCode.DUPLICATE_RESOURCE:
                        raise
                    report.skipped.append(outline.xml_url)
                except FeedPulseError as e:
                    self.logger.warning(f"Import of {outline.xml_url} failed: {e}")
                    report.failed[outline.xml_url] = str(e)

        self.logger.info(
            f"OPML import: {len(report.subscribed)} subscribed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    def export_opml(self, title: str = "FeedPulse Subscriptions") -> bytes:
        """Render all subscriptions as an OPML 2.0 document."""
        outlines = [
            OPMLOutline(
                xml_url=descriptor.url,
                title=descriptor.display_title,
                feed_type=descriptor.format.value,
                html_url=descriptor.link,
                description=descriptor.description,
                category=descriptor.category,
            )
            for descriptor in self.store.list_feeds()
        ]
        return generate_opml(outlines, title=title)
