"""
FeedPulse Data Models
=====================

Canonical, format-independent models for feeds and items, plus the persisted
feed descriptor and the small value types passed between fetcher, parsers,
store and scheduler.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set, Dict, Any

from pydantic import BaseModel, Field, field_validator


class FeedFormat(str, Enum):
    """Supported syndication formats."""
    RSS = "rss"
    ATOM = "atom"


class Weekday(str, Enum):
    """Day names as they appear in RSS <skipDays>."""
    MONDAY = "Monday"
    TUESDAY = "Tuesday"
    WEDNESDAY = "Wednesday"
    THURSDAY = "Thursday"
    FRIDAY = "Friday"
    SATURDAY = "Saturday"
    SUNDAY = "Sunday"

    @classmethod
    def from_datetime(cls, moment: datetime) -> "Weekday":
        return list(cls)[moment.weekday()]

    @classmethod
    def parse(cls, value: str) -> Optional["Weekday"]:
        """Case-insensitive lookup; returns None for unknown names."""
        wanted = value.strip().lower()
        for day in cls:
            if day.value.lower() == wanted:
                return day
        return None


class Enclosure(BaseModel):
    """Media attachment of an item."""
    url: str = Field(..., description="Enclosure URL")
    length: Optional[int] = Field(default=None, ge=0, description="Size in bytes")
    mime_type: Optional[str] = Field(default=None, description="MIME type")


class SourceRef(BaseModel):
    """Attribution to the feed an item was republished from."""
    url: Optional[str] = Field(default=None, description="Source feed URL")
    title: Optional[str] = Field(default=None, description="Source feed title")
    id: Optional[str] = Field(default=None, description="Atom source id")


def _clean_skip_hours(values) -> Set[int]:
    hours = set()
    for value in values or ():
        try:
            hour = int(value)
        except (TypeError, ValueError):
            continue
        if 0 <= hour <= 23:
            hours.add(hour)
    return hours


def _clean_skip_days(values) -> Set[Weekday]:
    days = set()
    for value in values or ():
        day = value if isinstance(value, Weekday) else Weekday.parse(str(value))
        if day is not None:
            days.add(day)
    return days


class CanonicalFeed(BaseModel):
    """Feed-level metadata normalized from either RSS or Atom."""
    url: str = Field(..., description="Subscribed feed URL")
    format: FeedFormat = Field(..., description="Source format")
    title: str = Field(default="", description="Feed title")
    description: Optional[str] = Field(default=None, description="RSS description / Atom subtitle")
    link: Optional[str] = Field(default=None, description="Canonical website link")
    rights: Optional[str] = Field(default=None, description="RSS copyright / Atom rights")
    language: Optional[str] = Field(default=None, description="Declared language")
    managing_editor: Optional[str] = Field(default=None, description="RSS managingEditor")
    web_master: Optional[str] = Field(default=None, description="RSS webMaster")
    authors: List[str] = Field(default_factory=list, description="Atom feed authors")
    categories: List[str] = Field(default_factory=list, description="Category terms")
    atom_id: Optional[str] = Field(default=None, description="Atom feed id")
    icon: Optional[str] = Field(default=None, description="Atom icon URL")
    logo: Optional[str] = Field(default=None, description="Atom logo URL")
    image: Optional[str] = Field(default=None, description="RSS image URL")
    docs: Optional[str] = Field(default=None, description="RSS docs URL")
    ttl: Optional[int] = Field(default=None, ge=0, description="Publisher refresh interval in minutes")
    skip_hours: Set[int] = Field(default_factory=set, description="UTC hours during which polling is suppressed")
    skip_days: Set[Weekday] = Field(default_factory=set, description="Weekdays during which polling is suppressed")
    published_at: Optional[datetime] = Field(default=None, description="RSS pubDate")
    updated_at: Optional[datetime] = Field(default=None, description="RSS lastBuildDate / Atom updated")

    @field_validator('skip_hours', mode='before')
    @classmethod
    def validate_skip_hours(cls, v):
        """Keep only hours in 0..23."""
        return _clean_skip_hours(v)

    @field_validator('skip_days', mode='before')
    @classmethod
    def validate_skip_days(cls, v):
        """Normalize day names, dropping unknown ones."""
        return _clean_skip_days(v)

    def __str__(self) -> str:
        return f"CanonicalFeed({self.format.value}:{self.title or self.url})"


class CanonicalItem(BaseModel):
    """One entry of a feed, normalized from an RSS item or an Atom entry."""
    natural_key: str = Field(..., min_length=1, description="RSS guid (or link) / Atom entry id")
    title: Optional[str] = Field(default=None, description="Item title")
    link: Optional[str] = Field(default=None, description="Canonical item link")
    body: Optional[str] = Field(default=None, description="RSS description / Atom summary")
    published_at: Optional[datetime] = Field(default=None, description="Publication time")
    updated_at: Optional[datetime] = Field(default=None, description="Last update time")
    author: Optional[str] = Field(default=None, description="Author")
    contributors: List[str] = Field(default_factory=list, description="Atom contributors")
    categories: List[str] = Field(default_factory=list, description="Category terms")
    comments: Optional[str] = Field(default=None, description="RSS comments URL")
    enclosure: Optional[Enclosure] = Field(default=None, description="Media attachment")
    source: Optional[SourceRef] = Field(default=None, description="Source attribution")
    rights: Optional[str] = Field(default=None, description="Atom entry rights")
    id: Optional[int] = Field(default=None, description="Database primary key once persisted")

    @property
    def timestamp(self) -> Optional[datetime]:
        """Best available timestamp for display and ordering."""
        return self.published_at or self.updated_at

    def __str__(self) -> str:
        return f"CanonicalItem({self.natural_key})"


@dataclass
class ParsedFeed:
    """Parser output: feed metadata plus items in document order."""

    feed: CanonicalFeed
    items: List[CanonicalItem] = field(default_factory=list)


@dataclass
class FetchToken:
    """Conditional-fetch token (ETag / Last-Modified)."""

    etag: Optional[str] = None
    last_modified: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.etag or self.last_modified)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO-8601 text in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 text written by to_db_timestamp."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class FeedDescriptor(BaseModel):
    """A subscribed feed as persisted in the registry."""
    id: int = Field(..., description="Database primary key")
    url: str = Field(..., description="Feed URL (unique)")
    format: FeedFormat = Field(..., description="Stored format discriminant")
    title: str = Field(default="", description="Publisher title")
    custom_title: Optional[str] = Field(default=None, description="Operator title override")
    category: Optional[str] = Field(default=None, description="Operator grouping label")
    description: Optional[str] = Field(default=None, description="Feed description")
    link: Optional[str] = Field(default=None, description="Website link")
    ttl: Optional[int] = Field(default=None, description="Declared ttl in minutes")
    skip_hours: Set[int] = Field(default_factory=set)
    skip_days: Set[Weekday] = Field(default_factory=set)
    etag: Optional[str] = Field(default=None, description="Last ETag")
    last_modified: Optional[str] = Field(default=None, description="Last Last-Modified")
    last_polled_at: Optional[datetime] = Field(default=None, description="Last poll attempt")
    last_success_at: Optional[datetime] = Field(default=None, description="Last successful poll")
    created_at: Optional[datetime] = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('skip_hours', mode='before')
    @classmethod
    def validate_skip_hours(cls, v):
        if isinstance(v, str):
            v = json.loads(v)
        return _clean_skip_hours(v)

    @field_validator('skip_days', mode='before')
    @classmethod
    def validate_skip_days(cls, v):
        if isinstance(v, str):
            v = json.loads(v)
        return _clean_skip_days(v)

    @property
    def display_title(self) -> str:
        return self.custom_title or self.title or self.url

    @property
    def token(self) -> FetchToken:
        return FetchToken(etag=self.etag, last_modified=self.last_modified)

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> "FeedDescriptor":
        """Create descriptor from a joined registry row."""
        data = dict(row)
        for key in ('last_polled_at', 'last_success_at', 'created_at'):
            data[key] = from_db_timestamp(data.get(key))
        data['skip_hours'] = data.get('skip_hours') or '[]'
        data['skip_days'] = data.get('skip_days') or '[]'
        return cls(**data)

    def __str__(self) -> str:
        return f"Feed({self.id}:{self.display_title})"


@dataclass
class NewItemsEvent:
    """Newly discovered items of one feed, handed to the event sink."""

    feed_id: int
    feed_url: str
    feed_title: str
    items: List[CanonicalItem] = field(default_factory=list)
