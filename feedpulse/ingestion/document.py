"""
Feed Document Helpers
=====================

Shared plumbing for the RSS and Atom parsers: the well-formedness gate,
root-element detection, the feedparser invocation and date conversion.
Everything here is pure and performs no I/O.
"""

import io
import calendar
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import feedparser

from ..utils.exceptions import MalformedFeed, ErrorCode

ATOM_NAMESPACE = "http://www.w3.org/2005/Atom"
ATOM_ROOT_TAG = f"{{{ATOM_NAMESPACE}}}feed"
RSS_ROOT_TAG = "rss"


def load_document(body: bytes, feed_url: Optional[str] = None) -> ET.Element:
    """Parse raw bytes into an element tree, rejecting non-well-formed XML.

    Raises:
        MalformedFeed: FEED_NOT_WELL_FORMED when the bytes are not XML
    """
    if not body or not body.strip():
        raise MalformedFeed(
            "Empty document",
            feed_url=feed_url,
            error_code=ErrorCode.FEED_NOT_WELL_FORMED,
        )
    try:
        return ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedFeed(
            f"Document is not well-formed XML: {e}",
            feed_url=feed_url,
            error_code=ErrorCode.FEED_NOT_WELL_FORMED,
        )


def wrong_root(root: ET.Element, expected: str, feed_url: Optional[str]) -> MalformedFeed:
    return MalformedFeed(
        f"Root element <{root.tag}> is not {expected}",
        feed_url=feed_url,
        error_code=ErrorCode.FEED_WRONG_ROOT,
    )


def missing_field(field_name: str, feed_url: Optional[str]) -> MalformedFeed:
    return MalformedFeed(
        f"Required field '{field_name}' is missing",
        feed_url=feed_url,
        error_code=ErrorCode.FEED_MISSING_FIELD,
        context={"field_name": field_name},
    )


def run_feedparser(body: bytes) -> feedparser.FeedParserDict:
    """Run feedparser over bytes without network access or content rewriting."""
    # A stream is passed so feedparser never treats the input as a URL/path
    return feedparser.parse(
        io.BytesIO(body),
        sanitize_html=False,
        resolve_relative_uris=False,
    )


def clean_text(value: Any) -> Optional[str]:
    """Strip text values, mapping empty strings to None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def child_text(parent: Optional[ET.Element], tag: str) -> Optional[str]:
    if parent is None:
        return None
    child = parent.find(tag)
    if child is None:
        return None
    return clean_text("".join(child.itertext()))


def children_text(parent: Optional[ET.Element], path: str) -> List[str]:
    if parent is None:
        return []
    values = []
    for child in parent.findall(path):
        text = clean_text("".join(child.itertext()))
        if text:
            values.append(text)
    return values


def tag_terms(tags: Optional[Iterable[Any]]) -> List[str]:
    """Category terms from feedparser's ``tags`` list, in order, deduplicated."""
    terms: List[str] = []
    for tag in tags or ():
        term = clean_text(tag.get("term") or tag.get("label"))
        if term and term not in terms:
            terms.append(term)
    return terms


def struct_to_datetime(value) -> Optional[datetime]:
    """Convert feedparser's UTC struct_time into an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (OverflowError, ValueError, TypeError):
        return None


def resolve_date(
    container: Any,
    key: str,
    polled_at: datetime,
    logger=None,
) -> Optional[datetime]:
    """Read a date field parsed by feedparser.

    An absent date stays None. A date that is present but that no date
    handler could parse is replaced with the poll time, so one bad field
    never fails the whole document.
    """
    # dict.get skips feedparser's deprecated updated -> published fallback
    raw = clean_text(dict.get(container, key))
    if raw is None:
        return None

    parsed = struct_to_datetime(dict.get(container, f"{key}_parsed"))
    if parsed is not None:
        return parsed

    if logger is not None:
        logger.debug(f"Unparseable {key} '{raw}', substituting poll time")
    return polled_at
