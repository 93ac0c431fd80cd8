"""
Atom 1.0 Parser
===============

Turns raw Atom bytes into the canonical model. Atom declares no refresh
interval or blackout windows, so the canonical feed carries no ttl and empty
skip sets and the scheduler falls back to its default interval.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from ..database.models import (
    CanonicalFeed,
    CanonicalItem,
    FeedFormat,
    ParsedFeed,
    SourceRef,
)
from ..utils.logging import get_logger_for_component
from .document import (
    ATOM_NAMESPACE,
    ATOM_ROOT_TAG,
    clean_text,
    load_document,
    missing_field,
    resolve_date,
    run_feedparser,
    tag_terms,
    wrong_root,
)

logger = get_logger_for_component("atom_parser")

YOUTUBE_ID_PREFIX = "yt:video:"
YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v="


def parse_atom(body: bytes, url: str, polled_at: datetime) -> ParsedFeed:
    """Parse an Atom 1.0 document.

    Args:
        body: Raw document bytes
        url: Subscribed feed URL, recorded on the canonical feed
        polled_at: Poll time, substituted for unparseable dates

    Returns:
        ParsedFeed with the feed metadata and entries in document order

    Raises:
        MalformedFeed: Not well-formed XML, a root other than Atom <feed>,
            or a feed without an id
    """
    root = load_document(body, feed_url=url)
    if root.tag != ATOM_ROOT_TAG:
        raise wrong_root(root, "Atom <feed>", url)

    if clean_text(root.findtext(f"{{{ATOM_NAMESPACE}}}id")) is None:
        raise missing_field("feed/id", url)

    parsed = run_feedparser(body)
    meta = parsed.feed
    log = logger.bind(feed_url=url)

    atom_id = clean_text(meta.get("id")) or clean_text(
        root.findtext(f"{{{ATOM_NAMESPACE}}}id")
    )
    link = _pick_link(meta.get("links"))

    feed = CanonicalFeed(
        url=url,
        format=FeedFormat.ATOM,
        title=clean_text(meta.get("title")) or link or atom_id,
        description=clean_text(meta.get("subtitle")),
        link=link,
        rights=clean_text(meta.get("rights")),
        language=clean_text(meta.get("language")),
        authors=_person_names(meta.get("authors")),
        categories=tag_terms(meta.get("tags")),
        atom_id=atom_id,
        icon=clean_text(meta.get("icon")),
        logo=clean_text(meta.get("logo")),
        updated_at=resolve_date(meta, "updated", polled_at, log),
    )

    items: List[CanonicalItem] = []
    for position, entry in enumerate(parsed.entries):
        item = _parse_entry(entry, polled_at, log)
        if item is None:
            log.warning(f"Skipping entry #{position} without an id")
            continue
        items.append(item)

    return ParsedFeed(feed=feed, items=items)


def _parse_entry(entry, polled_at: datetime, log) -> Optional[CanonicalItem]:
    entry_id = clean_text(entry.get("id"))
    if entry_id is None:
        return None

    source = None
    source_data = entry.get("source")
    if source_data:
        source = SourceRef(
            url=_pick_link(source_data.get("links")),
            title=clean_text(source_data.get("title")),
            id=clean_text(source_data.get("id")),
        )

    authors = _person_names(entry.get("authors"))

    return CanonicalItem(
        natural_key=entry_id,
        title=clean_text(entry.get("title")),
        link=_entry_link(entry_id, entry.get("links")),
        body=_entry_body(entry),
        published_at=resolve_date(entry, "published", polled_at, log),
        updated_at=resolve_date(entry, "updated", polled_at, log),
        author=", ".join(authors) if authors else None,
        contributors=_person_names(entry.get("contributors")),
        categories=tag_terms(entry.get("tags")),
        rights=clean_text(entry.get("rights")),
        source=source,
    )


def _pick_link(links: Optional[Iterable], rels=("alternate",)) -> Optional[str]:
    for rel in rels:
        for link in links or ():
            if link.get("rel", "alternate") == rel and clean_text(link.get("href")):
                return link["href"].strip()
    return None


def _entry_link(entry_id: str, links) -> Optional[str]:
    """Alternate link, then self link, then a link derived from the id."""
    link = _pick_link(links, rels=("alternate", "self"))
    if link:
        return link
    if entry_id.startswith(YOUTUBE_ID_PREFIX):
        return YOUTUBE_WATCH_URL + entry_id[len(YOUTUBE_ID_PREFIX):]
    if entry_id.startswith(("http://", "https://")):
        return entry_id
    return None


def _entry_body(entry) -> Optional[str]:
    summary = entry.get("summary")
    if summary:
        return summary
    for content in entry.get("content") or ():
        if content.get("value"):
            return content["value"]
    return None


def _person_names(people: Optional[Iterable]) -> List[str]:
    names: List[str] = []
    for person in people or ():
        name = clean_text(person.get("name")) or clean_text(person.get("email"))
        if name and name not in names:
            names.append(name)
    return names
