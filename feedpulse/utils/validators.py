"""
FeedPulse Input Validators
==========================

Validation for operator input: feed URLs passed to subscribe/import and file
paths handed to the OPML commands.
"""

import ipaddress
from pathlib import Path
from urllib.parse import urlparse, urlunparse

from .exceptions import ValidationError, ErrorCode


class URLValidator:
    """URL validation and normalization utilities."""

    # Allowed schemes for RSS/Atom feeds
    ALLOWED_SCHEMES = {"http", "https"}

    @classmethod
    def validate_feed_url(cls, url: str, allow_private_hosts: bool = False) -> str:
        """Validate and normalize a feed URL.

        Args:
            url: URL to validate
            allow_private_hosts: Accept loopback and private-network hosts

        Returns:
            Normalized URL

        Raises:
            ValidationError: If URL is invalid
        """
        if not url or not isinstance(url, str):
            raise ValidationError(
                "URL is required and must be a string",
                error_code=ErrorCode.VALIDATION_REQUIRED_FIELD,
                field_name="url",
            )

        url = url.strip()

        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except ValueError as e:
            raise ValidationError(
                f"Invalid URL format: {str(e)}",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        if parsed.scheme.lower() not in cls.ALLOWED_SCHEMES:
            raise ValidationError(
                f"URL scheme must be {' or '.join(sorted(cls.ALLOWED_SCHEMES))}",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        if not parsed.netloc or not hostname:
            raise ValidationError(
                "URL must include a hostname",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        if not allow_private_hosts and cls._is_private_host(hostname):
            raise ValidationError(
                "URL points to a private or loopback host",
                error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
                field_name="url",
            )

        return urlunparse(
            parsed._replace(
                scheme=parsed.scheme.lower(),
                netloc=parsed.netloc.lower(),
                path=parsed.path or "/",
                fragment="",
            )
        )

    @classmethod
    def _is_private_host(cls, hostname: str) -> bool:
        """Check for loopback, link-local and private-network hosts."""
        if hostname.lower() == "localhost":
            return True
        try:
            address = ipaddress.ip_address(hostname)
        except ValueError:
            return False
        return address.is_private or address.is_loopback or address.is_link_local


def validate_file_path(file_path: str, must_exist: bool = False) -> Path:
    """Validate file path.

    Args:
        file_path: File path to validate
        must_exist: Whether the file must already exist

    Returns:
        Validated Path object

    Raises:
        ValidationError: If path is invalid
    """
    if not file_path or not isinstance(file_path, str):
        raise ValidationError(
            "File path is required",
            error_code=ErrorCode.VALIDATION_REQUIRED_FIELD,
            field_name="file_path",
        )

    path = Path(file_path).expanduser().resolve()

    if must_exist and not path.is_file():
        raise ValidationError(
            f"File does not exist: {file_path}",
            error_code=ErrorCode.VALIDATION_INVALID_FORMAT,
            field_name="file_path",
        )

    return path

