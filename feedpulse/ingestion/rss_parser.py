"""
RSS 2.0 Parser
==============

Turns raw RSS bytes into the canonical model. Field extraction goes through
feedparser; the scheduling hints feedparser does not model (ttl, skipHours,
skipDays) are read from the element tree directly.
"""

from datetime import datetime
from typing import List, Optional, Set
from urllib.parse import urlparse

from ..database.models import (
    CanonicalFeed,
    CanonicalItem,
    Enclosure,
    FeedFormat,
    ParsedFeed,
    SourceRef,
    Weekday,
)
from ..utils.logging import get_logger_for_component
from .document import (
    RSS_ROOT_TAG,
    child_text,
    children_text,
    clean_text,
    load_document,
    missing_field,
    resolve_date,
    run_feedparser,
    tag_terms,
    wrong_root,
)

logger = get_logger_for_component("rss_parser")


def parse_rss(body: bytes, url: str, polled_at: datetime) -> ParsedFeed:
    """Parse an RSS 2.0 document.

    Args:
        body: Raw document bytes
        url: Subscribed feed URL, recorded on the canonical feed
        polled_at: Poll time, substituted for unparseable dates

    Returns:
        ParsedFeed with the channel metadata and items in document order

    Raises:
        MalformedFeed: Not well-formed XML, a root other than <rss>, or a
            channel without a link
    """
    root = load_document(body, feed_url=url)
    if root.tag != RSS_ROOT_TAG:
        raise wrong_root(root, "<rss>", url)
    channel = root.find("channel")
    if channel is None:
        raise wrong_root(root, "<rss> with a <channel>", url)

    if child_text(channel, "link") is None:
        raise missing_field("channel/link", url)

    parsed = run_feedparser(body)
    meta = parsed.feed
    log = logger.bind(feed_url=url)

    image = meta.get("image") or {}
    feed = CanonicalFeed(
        url=url,
        format=FeedFormat.RSS,
        title=clean_text(meta.get("title")) or child_text(channel, "link"),
        description=clean_text(meta.get("subtitle")),
        link=clean_text(meta.get("link")) or child_text(channel, "link"),
        rights=clean_text(meta.get("rights")),
        language=clean_text(meta.get("language")),
        managing_editor=clean_text(meta.get("author")),
        web_master=clean_text(meta.get("publisher")),
        categories=tag_terms(meta.get("tags")),
        image=clean_text(image.get("href")),
        docs=clean_text(meta.get("docs")),
        ttl=_parse_ttl(child_text(channel, "ttl"), log),
        skip_hours=_parse_skip_hours(channel, log),
        skip_days=_parse_skip_days(channel, log),
        published_at=resolve_date(meta, "published", polled_at, log),
        updated_at=resolve_date(meta, "updated", polled_at, log),
    )

    elements = channel.findall("item")
    if len(elements) != len(parsed.entries):
        elements = [None] * len(parsed.entries)

    items: List[CanonicalItem] = []
    for position, (entry, element) in enumerate(zip(parsed.entries, elements)):
        item = _parse_item(entry, element, polled_at, log)
        if item is None:
            log.warning(f"Skipping item #{position} with neither guid nor link")
            continue
        items.append(item)

    return ParsedFeed(feed=feed, items=items)


def _parse_item(entry, element, polled_at: datetime, log) -> Optional[CanonicalItem]:
    guid = clean_text(entry.get("id"))
    link = _item_link(entry, element, guid)
    natural_key = guid or link
    if natural_key is None:
        return None

    enclosure = None
    enclosures = entry.get("enclosures") or []
    if enclosures and clean_text(enclosures[0].get("href")):
        first = enclosures[0]
        enclosure = Enclosure(
            url=first.get("href").strip(),
            length=_parse_length(first.get("length")),
            mime_type=clean_text(first.get("type")),
        )

    source = None
    source_data = entry.get("source")
    if source_data:
        source = SourceRef(
            url=clean_text(source_data.get("href")),
            title=clean_text(source_data.get("title")),
        )

    return CanonicalItem(
        natural_key=natural_key,
        title=clean_text(entry.get("title")),
        link=link,
        body=entry.get("summary") or None,
        published_at=resolve_date(entry, "published", polled_at, log),
        author=clean_text(entry.get("author")),
        categories=tag_terms(entry.get("tags")),
        comments=clean_text(entry.get("comments")),
        enclosure=enclosure,
        source=source,
    )


def _item_link(entry, element, guid: Optional[str]) -> Optional[str]:
    """Item link from <link>, or from a guid that is really a permalink.

    feedparser copies any guid without isPermaLink="false" into ``link`` and
    flags it with ``guidislink``; a bare key such as "1" is not a link.
    """
    if element is not None:
        link = child_text(element, "link")
        if link is not None:
            return link
    else:
        link = clean_text(entry.get("link"))
        if link is None or not entry.get("guidislink"):
            return link

    if _is_absolute_http(guid):
        return guid
    guid_element = element.find("guid") if element is not None else None
    if guid_element is not None and guid_element.get("isPermaLink", "").strip().lower() == "true":
        return guid
    return None


def _is_absolute_http(value: Optional[str]) -> bool:
    if not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_length(value) -> Optional[int]:
    try:
        length = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return length if length >= 0 else None


def _parse_ttl(value: Optional[str], log) -> Optional[int]:
    if value is None:
        return None
    try:
        ttl = int(value)
    except ValueError:
        log.warning(f"Ignoring non-integer ttl '{value}'")
        return None
    if ttl < 0:
        log.warning(f"Ignoring negative ttl {ttl}")
        return None
    return ttl


def _parse_skip_hours(channel, log) -> Set[int]:
    hours: Set[int] = set()
    for raw in children_text(channel, "skipHours/hour"):
        try:
            hour = int(raw)
        except ValueError:
            log.warning(f"Ignoring invalid skipHours entry '{raw}'")
            continue
        # RSS 2.0 allows 24 as a synonym for midnight
        if hour == 24:
            hour = 0
        if 0 <= hour <= 23:
            hours.add(hour)
        else:
            log.warning(f"Ignoring out-of-range skipHours entry {hour}")
    return hours


def _parse_skip_days(channel, log) -> Set[Weekday]:
    days: Set[Weekday] = set()
    for raw in children_text(channel, "skipDays/day"):
        day = Weekday.parse(raw)
        if day is None:
            log.warning(f"Ignoring invalid skipDays entry '{raw}'")
            continue
        days.add(day)
    return days
