"""
FeedPulse - Feed Ingestion Daemon
=================================

Polls RSS 2.0 and Atom 1.0 feeds, persists their items, and hands newly
discovered items to a pluggable event sink.

Main Components:
- Database: SQLite with connection pooling and schema management
- Configuration: environment variables with Pydantic validation
- Ingestion: conditional HTTP fetching, RSS/Atom parsing, OPML
- Storage: transactional deduplication of items per feed
- Scheduler: per-feed cadence, blackout windows and backoff
- Delivery: log and Telegram event sinks
"""

__version__ = "1.0.0"
__author__ = "FeedPulse Development Team"
__description__ = "RSS/Atom feed ingestion daemon"

# Core imports for easy access
from .config.settings import get_settings
from .database.connection import get_db_manager
from .database.schema import DatabaseSchema
from .utils.logging import configure_application_logging, get_logger_for_component
from .utils.exceptions import FeedPulseError

__all__ = [
    "get_settings",
    "get_db_manager",
    "DatabaseSchema",
    "configure_application_logging",
    "get_logger_for_component",
    "FeedPulseError",
]
