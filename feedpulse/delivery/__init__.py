"""
FeedPulse Delivery
==================

Event sinks receiving newly discovered items.
"""

from .event_sink import EventSink, LoggingEventSink
from .factory import build_event_sink
from .telegram_sink import TelegramEventSink

__all__ = [
    "EventSink",
    "LoggingEventSink",
    "TelegramEventSink",
    "build_event_sink",
]
