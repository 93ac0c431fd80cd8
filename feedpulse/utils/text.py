"""
Plain-text rendering of item bodies for notifications.
"""

import re
from typing import Optional

from bs4 import BeautifulSoup

# Elements whose text is never shown to a reader
NON_CONTENT_ELEMENTS = ["script", "style", "iframe", "object", "embed", "noscript"]

WHITESPACE_PATTERN = re.compile(r"\s+")


def extract_plain_text(html_content: Optional[str]) -> str:
    """Strip markup from an HTML fragment and collapse whitespace."""
    if not html_content or not html_content.strip():
        return ""

    soup = BeautifulSoup(html_content, "html.parser")
    for element in soup(NON_CONTENT_ELEMENTS):
        element.decompose()

    text = soup.get_text(separator=" ", strip=True)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def excerpt(html_content: Optional[str], limit: int = 300) -> str:
    """Plain-text excerpt cut at a word boundary."""
    text = extract_plain_text(html_content)
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0] or text[:limit]
    return cut.rstrip(" ,.;:") + "..."
