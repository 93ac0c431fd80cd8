"""
Feed Fetcher
============

Conditional HTTP retrieval of feed documents with failure classification.
A fetch either returns fresh bytes with a new conditional-fetch token,
reports that nothing changed, or raises a classified error. The fetcher
never touches the store.
"""

import asyncio
import ssl
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import AsyncGenerator, Dict, Optional, Union

import aiohttp
import certifi

from ..config.settings import FetchSettings, get_settings
from ..database.models import FetchToken
from ..utils.exceptions import (
    ConnectionFailure,
    ErrorCode,
    FetchTimeout,
    HttpClientError,
    HttpRetryableError,
    TlsFailure,
)
from ..utils.logging import get_logger_for_component

ACCEPT_HEADER = (
    "application/rss+xml, application/atom+xml, "
    "application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"
)


@dataclass
class FreshContent:
    """A 2xx answer with the document body."""

    body: bytes
    token: FetchToken
    final_url: str
    status: int = 200


@dataclass
class NotModified:
    """A 304 answer: the document is unchanged since the last token."""

    status: int = 304


FetchOutcome = Union[FreshContent, NotModified]


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given as seconds or as an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class FeedFetcher:
    """HTTP fetcher for feed documents."""

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        max_connections: int = 20,
    ):
        """Initialize feed fetcher.

        Args:
            settings: Fetch settings (default from config)
            max_connections: Connection limit of sessions created by get_session
        """
        self.settings = settings or get_settings().fetch
        self.timeout = self.settings.request_timeout
        self.max_redirects = self.settings.max_redirects
        self.max_body_bytes = self.settings.max_body_bytes
        self.max_connections = max_connections
        self.logger = get_logger_for_component("fetcher")

        # SSL context for secure requests
        self.ssl_context = ssl.create_default_context(cafile=certifi.where())

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[aiohttp.ClientSession, None]:
        """Get a configured aiohttp session."""
        connector = aiohttp.TCPConnector(
            ssl=self.ssl_context,
            limit=self.max_connections,
            limit_per_host=4,
            enable_cleanup_closed=True,
        )

        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept": ACCEPT_HEADER,
            "Accept-Encoding": "gzip, deflate",
        }

        async with aiohttp.ClientSession(
            connector=connector, headers=headers
        ) as session:
            yield session

    def _conditional_headers(self, token: Optional[FetchToken]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if token is None:
            return headers
        if token.etag:
            headers["If-None-Match"] = token.etag
        if token.last_modified:
            headers["If-Modified-Since"] = token.last_modified
        return headers

    async def fetch(
        self,
        url: str,
        token: Optional[FetchToken],
        session: aiohttp.ClientSession,
    ) -> FetchOutcome:
        """Retrieve a feed document.

        Args:
            url: Feed URL
            token: Last conditional-fetch token, if any
            session: aiohttp session for requests

        Returns:
            FreshContent or NotModified

        Raises:
            FetchTimeout, ConnectionFailure, TlsFailure: transport failures
            HttpRetryableError: 429 or 5xx
            HttpClientError: other 4xx, unexpected status, redirect loop,
                oversized body
        """
        headers = self._conditional_headers(token)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        self.logger.debug(f"Fetching {url}", extra={"conditional": bool(headers)})

        try:
            async with session.get(
                url,
                headers=headers,
                timeout=timeout,
                allow_redirects=True,
                max_redirects=self.max_redirects,
            ) as response:
                return await self._handle_response(url, response)

        except asyncio.TimeoutError:
            raise FetchTimeout(
                f"Request timeout after {self.timeout}s", feed_url=url
            )
        except aiohttp.TooManyRedirects:
            raise HttpClientError(
                f"More than {self.max_redirects} redirects",
                feed_url=url,
                error_code=ErrorCode.FEED_TOO_MANY_REDIRECTS,
            )
        except (aiohttp.ClientSSLError, aiohttp.ServerFingerprintMismatch, ssl.SSLError) as e:
            raise TlsFailure(f"TLS failure: {e}", feed_url=url)
        except aiohttp.InvalidURL as e:
            raise HttpClientError(
                f"Invalid URL: {e}",
                feed_url=url,
                error_code=ErrorCode.FEED_INVALID_URL,
            )
        except aiohttp.ClientError as e:
            raise ConnectionFailure(
                f"Connection failed: {type(e).__name__}: {e}", feed_url=url
            )

    async def _handle_response(
        self, url: str, response: aiohttp.ClientResponse
    ) -> FetchOutcome:
        status = response.status

        if status == 304:
            self.logger.debug(f"Not modified: {url}")
            return NotModified()

        if 200 <= status < 300:
            body = await self._read_body(url, response)
            token = FetchToken(
                etag=response.headers.get("ETag"),
                last_modified=response.headers.get("Last-Modified"),
            )
            self.logger.debug(f"Fetched {len(body)} bytes from {url} (HTTP {status})")
            return FreshContent(
                body=body, token=token, final_url=str(response.url), status=status
            )

        if status == 429 or status >= 500:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise HttpRetryableError(
                f"HTTP {status}: {response.reason}",
                status_code=status,
                feed_url=url,
                retry_after=retry_after,
            )

        raise HttpClientError(
            f"HTTP {status}: {response.reason}",
            status_code=status,
            feed_url=url,
        )

    async def _read_body(self, url: str, response: aiohttp.ClientResponse) -> bytes:
        declared = response.content_length
        if declared is not None and declared > self.max_body_bytes:
            raise HttpClientError(
                f"Document of {declared} bytes exceeds limit of {self.max_body_bytes}",
                status_code=response.status,
                feed_url=url,
                error_code=ErrorCode.CONTENT_TOO_LARGE,
            )

        chunks = []
        received = 0
        async for chunk in response.content.iter_chunked(64 * 1024):
            received += len(chunk)
            if received > self.max_body_bytes:
                raise HttpClientError(
                    f"Document exceeds limit of {self.max_body_bytes} bytes",
                    status_code=response.status,
                    feed_url=url,
                    error_code=ErrorCode.CONTENT_TOO_LARGE,
                )
            chunks.append(chunk)
        return b"".join(chunks)
