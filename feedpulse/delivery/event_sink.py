"""
Event Sinks
===========

Downstream hand-off of newly discovered items. The scheduler calls
``emit`` once per committed cycle that produced new items; a sink reports
failure by returning False or raising, and either way the items stay
persisted and are not offered again.
"""

from abc import ABC, abstractmethod

from ..database.models import NewItemsEvent
from ..utils.logging import get_logger_for_component


class EventSink(ABC):
    """Receiver of NewItemsEvent notifications."""

    async def start(self) -> None:
        """Acquire resources before the first emit."""

    async def close(self) -> None:
        """Release resources after the last emit."""

    @abstractmethod
    async def emit(self, event: NewItemsEvent) -> bool:
        """Deliver an event.

        Returns:
            True if the event was delivered
        """


class LoggingEventSink(EventSink):
    """Writes each new item to the application log."""

    def __init__(self):
        self.logger = get_logger_for_component("event_sink")

    async def emit(self, event: NewItemsEvent) -> bool:
        log = self.logger.bind(feed_id=event.feed_id, feed_url=event.feed_url)
        log.info(f"{len(event.items)} new items in '{event.feed_title}'")
        for item in event.items:
            log.info(
                f"New item: {item.title or '(untitled)'} <{item.link or item.natural_key}>",
                extra={"natural_key": item.natural_key},
            )
        return True
