"""
Format Dispatch
===============

Maps the stored format discriminant to its parser function. The two parsers
share no base class; callers pick one by FeedFormat.
"""

from datetime import datetime
from typing import Callable, Dict, Optional

from ..database.models import FeedFormat, ParsedFeed
from .atom_parser import parse_atom
from .document import ATOM_ROOT_TAG, RSS_ROOT_TAG, load_document, wrong_root
from .rss_parser import parse_rss

ParserFn = Callable[[bytes, str, datetime], ParsedFeed]

PARSERS: Dict[FeedFormat, ParserFn] = {
    FeedFormat.RSS: parse_rss,
    FeedFormat.ATOM: parse_atom,
}


def detect_format(body: bytes, feed_url: Optional[str] = None) -> FeedFormat:
    """Identify the syndication format from the document root.

    Raises:
        MalformedFeed: The document is not XML or is neither RSS nor Atom
    """
    root = load_document(body, feed_url=feed_url)
    if root.tag == RSS_ROOT_TAG:
        return FeedFormat.RSS
    if root.tag == ATOM_ROOT_TAG:
        return FeedFormat.ATOM
    raise wrong_root(root, "<rss> or Atom <feed>", feed_url)


def parse_feed(
    feed_format: FeedFormat, body: bytes, url: str, polled_at: datetime
) -> ParsedFeed:
    """Parse ``body`` with the parser registered for ``feed_format``."""
    return PARSERS[FeedFormat(feed_format)](body, url, polled_at)
