"""
Sink selection from configuration.
"""

from typing import Optional

from ..config.settings import FeedPulseSettings, SinkType, get_settings
from .event_sink import EventSink, LoggingEventSink
from .telegram_sink import TelegramEventSink


def build_event_sink(settings: Optional[FeedPulseSettings] = None) -> EventSink:
    """Create the sink selected by ``delivery.sink``."""
    settings = settings or get_settings()

    if settings.delivery.sink == SinkType.TELEGRAM:
        return TelegramEventSink(
            bot_token=settings.telegram.bot_token,
            chat_id=settings.telegram.chat_id,
            message_delay=settings.delivery.message_delay,
            max_retries=settings.delivery.max_retries,
        )
    return LoggingEventSink()
