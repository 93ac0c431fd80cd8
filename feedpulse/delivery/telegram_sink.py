"""
Telegram Sink
=============

Posts one HTML message per new item to a Telegram chat.
"""

import asyncio
import html
from datetime import timedelta
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import BadRequest, Forbidden, RetryAfter, TelegramError, TimedOut

from ..database.models import CanonicalItem, NewItemsEvent
from ..utils.exceptions import DeliveryError, ErrorCode
from ..utils.logging import get_logger_for_component
from ..utils.text import excerpt
from .event_sink import EventSink

MAX_MESSAGE_LENGTH = 4096  # Telegram limit
MAX_FEED_TITLE_LENGTH = 256
ELLIPSIS = "..."


def _escape_within(text: str, limit: int) -> str:
    """HTML-escape text, shortening the plain text so the result fits ``limit``."""
    escaped = html.escape(text)
    if len(escaped) <= limit:
        return escaped
    if limit <= len(ELLIPSIS):
        return ""

    plain = text
    while len(escaped) > limit:
        overflow = len(html.escape(plain)) + len(ELLIPSIS) - limit
        plain = plain[: max(len(plain) - max(overflow, 1), 0)]
        escaped = html.escape(plain) + ELLIPSIS
    return escaped


def format_item_message(feed_title: str, item: CanonicalItem) -> str:
    """Render an item as Telegram HTML within the message length limit."""
    header = f"<b>{_escape_within(feed_title, MAX_FEED_TITLE_LENGTH)}</b>"
    author = f"<i>{html.escape(item.author)}</i>" if item.author else None
    if item.link:
        opening, closing = f'<a href="{html.escape(item.link, quote=True)}">', "</a>"
    else:
        opening = closing = ""

    fixed = len(header) + 1 + len(opening) + len(closing)
    if author:
        fixed += len(author) + 1
    title = _escape_within(item.title or item.link or item.natural_key, MAX_MESSAGE_LENGTH - fixed)

    lines = [header, f"{opening}{title}{closing}"]
    if author:
        lines.append(author)
    message = "\n".join(lines)

    summary = excerpt(item.body)
    budget = MAX_MESSAGE_LENGTH - len(message) - 2
    if summary and budget > len(ELLIPSIS):
        message += "\n\n" + _escape_within(summary, budget)
    return message


def _retry_after_seconds(error: RetryAfter) -> float:
    delay = error.retry_after
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


class TelegramEventSink(EventSink):
    """Event sink backed by python-telegram-bot."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_delay: float = 0.5,
        max_retries: int = 3,
        bot: Optional[Bot] = None,
    ):
        """Initialize Telegram sink.

        Args:
            bot_token: Bot API token (ignored when ``bot`` is given)
            chat_id: Chat receiving the messages
            message_delay: Seconds to wait between messages
            max_retries: Send attempts per message on transient errors
            bot: Pre-built Bot instance
        """
        if bot is None and not bot_token:
            raise ValueError("TelegramEventSink needs a bot token or a Bot instance")
        self.bot = bot or Bot(token=bot_token)
        self.chat_id = chat_id
        self.message_delay = message_delay
        self.max_retries = max(1, max_retries)
        self.logger = get_logger_for_component("telegram_sink")

    async def start(self) -> None:
        await self.bot.initialize()
        self.logger.info(f"Telegram sink ready for chat {self.chat_id}")

    async def close(self) -> None:
        await self.bot.shutdown()

    async def emit(self, event: NewItemsEvent) -> bool:
        """Send every item; a failing item is skipped unless the chat is unreachable."""
        failed = 0
        for index, item in enumerate(event.items):
            if index and self.message_delay:
                await asyncio.sleep(self.message_delay)
            try:
                await self._send(format_item_message(event.feed_title, item))
            except DeliveryError as e:
                e.context.update(feed_id=event.feed_id, natural_key=item.natural_key)
                if e.error_code == ErrorCode.DELIVERY_FORBIDDEN:
                    failed += len(event.items) - index
                    self.logger.error(
                        f"Forbidden to send to {self.chat_id}, dropping {failed} items: {e}",
                        extra=e.to_dict(),
                    )
                    break
                failed += 1
                self.logger.warning(
                    f"Skipping item {item.natural_key} of feed {event.feed_id}: {e}",
                    extra=e.to_dict(),
                )

        if failed:
            self.logger.warning(
                f"{failed} of {len(event.items)} items of feed {event.feed_id} were not delivered"
            )
            return False
        return True

    async def _send(self, text: str) -> None:
        """Send one message, retrying transient errors.

        Raises:
            DeliveryError: The message was rejected, the chat is forbidden,
                or every attempt failed
        """
        last_error: Optional[TelegramError] = None
        for attempt in range(self.max_retries):
            try:
                await self.bot.send_message(
                    chat_id=self.chat_id,
                    text=text,
                    parse_mode=ParseMode.HTML,
                    disable_web_page_preview=False,
                )
                return

            except RetryAfter as e:
                # Flood control
                last_error = e
                delay = _retry_after_seconds(e)
                self.logger.warning(f"Flood control for {self.chat_id}, waiting {delay:.0f}s")
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(delay)

            except Forbidden as e:
                # Bot was blocked or removed from the chat
                raise DeliveryError(
                    f"Forbidden to send to {self.chat_id}: {e}",
                    error_code=ErrorCode.DELIVERY_FORBIDDEN,
                    recoverable=False,
                ) from e

            except BadRequest as e:
                # Invalid chat or message format
                raise DeliveryError(
                    f"Bad request sending to {self.chat_id}: {e}",
                    error_code=ErrorCode.DELIVERY_REJECTED,
                    recoverable=False,
                ) from e

            except TimedOut as e:
                last_error = e
                self.logger.warning(
                    f"Timeout sending to {self.chat_id} (attempt {attempt + 1}): {e}"
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(2 ** attempt)

            except TelegramError as e:
                last_error = e
                self.logger.warning(
                    f"Telegram error sending to {self.chat_id} (attempt {attempt + 1}): {e}"
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(1)

        error_code = ErrorCode.DELIVERY_TIMEOUT if isinstance(last_error, TimedOut) else ErrorCode.DELIVERY_FAILED
        raise DeliveryError(
            f"Giving up after {self.max_retries} attempts: {last_error}",
            error_code=error_code,
        ) from last_error
