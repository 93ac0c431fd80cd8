"""
OPML Import/Export
==================

Reads and writes OPML 2.0 subscription lists. Folder outlines (outlines
without an ``xmlUrl``) become the category of the feeds nested in them.
"""

import io
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Iterable, List, Optional
from xml.etree import ElementTree as ET

from ..utils.exceptions import ErrorCode, ValidationError


@dataclass
class OPMLOutline:
    """One feed entry of an OPML document."""

    xml_url: str
    title: str = ""
    feed_type: str = "rss"
    html_url: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None


def parse_opml(content: bytes) -> List[OPMLOutline]:
    """Parse an OPML document into its feed outlines, in document order.

    Raises:
        ValidationError: If the document is not OPML
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ValidationError(
            f"Invalid OPML document: {e}",
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
            field_name="opml",
        ) from e

    if root.tag != "opml":
        raise ValidationError(
            f"Expected <opml> root, found <{root.tag}>",
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
            field_name="opml",
        )

    body = root.find("body")
    if body is None:
        return []

    outlines: List[OPMLOutline] = []
    _collect(body, None, outlines)
    return outlines


def _collect(parent: ET.Element, category: Optional[str], out: List[OPMLOutline]) -> None:
    for outline in parent.findall("outline"):
        xml_url = (outline.get("xmlUrl") or "").strip()
        label = outline.get("title") or outline.get("text") or ""

        if not xml_url:
            # Folder
            _collect(outline, label.strip() or category, out)
            continue

        out.append(
            OPMLOutline(
                xml_url=xml_url,
                title=label.strip(),
                feed_type=(outline.get("type") or "rss").lower(),
                html_url=outline.get("htmlUrl") or None,
                description=outline.get("description") or None,
                category=outline.get("category") or category,
            )
        )
        _collect(outline, category, out)


def generate_opml(outlines: Iterable[OPMLOutline], title: str = "FeedPulse Subscriptions") -> bytes:
    """Render outlines as an OPML 2.0 document (UTF-8 bytes)."""
    opml = ET.Element("opml", version="2.0")

    head = ET.SubElement(opml, "head")
    ET.SubElement(head, "title").text = title
    now = format_datetime(datetime.now(timezone.utc), usegmt=True)
    ET.SubElement(head, "dateCreated").text = now
    ET.SubElement(head, "dateModified").text = now

    body = ET.SubElement(opml, "body")
    for entry in outlines:
        outline = ET.SubElement(
            body,
            "outline",
            text=entry.title or entry.xml_url,
            title=entry.title or entry.xml_url,
            type=entry.feed_type,
            xmlUrl=entry.xml_url,
        )
        if entry.html_url:
            outline.set("htmlUrl", entry.html_url)
        if entry.description:
            outline.set("description", entry.description)
        if entry.category:
            outline.set("category", entry.category)

    tree = ET.ElementTree(opml)
    ET.indent(tree, space="  ")

    output = io.BytesIO()
    tree.write(output, encoding="utf-8", xml_declaration=True)
    return output.getvalue()
