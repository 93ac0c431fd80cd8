"""
Tests for OPML import/export.
"""

import pytest

from feedpulse.ingestion.opml import OPMLOutline, generate_opml, parse_opml
from feedpulse.utils.exceptions import ErrorCode, ValidationError

NESTED = b"""<?xml version="1.0"?>
<opml version="1.0">
  <head><title>Subs</title></head>
  <body>
    <outline text="News">
      <outline text="Daily" title="Daily News" type="rss"
               xmlUrl="https://news.example.com/rss" htmlUrl="https://news.example.com/"/>
      <outline text="Science">
        <outline text="Lab" type="atom" xmlUrl="https://lab.example.org/atom"/>
      </outline>
    </outline>
    <outline text="Loose" xmlUrl="https://loose.example.net/feed" category="misc"/>
    <outline text="Empty folder"/>
  </body>
</opml>"""


class TestParseOPML:

    def test_folders_become_categories(self):
        outlines = parse_opml(NESTED)

        assert [o.xml_url for o in outlines] == [
            "https://news.example.com/rss",
            "https://lab.example.org/atom",
            "https://loose.example.net/feed",
        ]
        assert outlines[0].category == "News"
        assert outlines[1].category == "Science"
        assert outlines[2].category == "misc"

    def test_outline_attributes(self):
        first = parse_opml(NESTED)[0]
        assert first.title == "Daily News"
        assert first.html_url == "https://news.example.com/"
        assert first.feed_type == "rss"

    def test_missing_body(self):
        assert parse_opml(b"<opml version='2.0'><head/></opml>") == []

    @pytest.mark.parametrize("content", [b"<rss/>", b"not xml at all", b"<opml><body>"])
    def test_rejects_invalid_documents(self, content):
        with pytest.raises(ValidationError) as exc_info:
            parse_opml(content)
        assert exc_info.value.error_code == ErrorCode.VALIDATION_INVALID_FORMAT


class TestGenerateOPML:

    def test_round_trip(self):
        outlines = [
            OPMLOutline(
                xml_url="https://a.example.com/rss",
                title="A & B",
                html_url="https://a.example.com/",
                category="Tech",
            ),
            OPMLOutline(xml_url="https://b.example.org/atom", feed_type="atom"),
        ]

        document = generate_opml(outlines, title="Backup")
        parsed = parse_opml(document)

        assert document.startswith(b"<?xml")
        assert b"<title>Backup</title>" in document
        assert parsed[0].title == "A & B"
        assert parsed[0].category == "Tech"
        assert parsed[0].html_url == "https://a.example.com/"
        # Untitled feeds fall back to their URL
        assert parsed[1].title == "https://b.example.org/atom"
        assert parsed[1].feed_type == "atom"
