"""
FeedPulse Database Schema
=========================

SQLite schema with foreign key constraints and indexes.

Tables:
- feeds: registry of subscribed feeds (unique URL, format discriminant,
  conditional-fetch token, poll bookkeeping, operator overrides)
- rss_feeds / atom_feeds: format-specific channel metadata, 1:1 with feeds
- rss_items / atom_items: items per format; the natural key (guid or
  entry_id) is unique per owning feed, never globally
"""

import sqlite3
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


EXPECTED_TABLES = {
    "feeds",
    "rss_feeds",
    "rss_items",
    "atom_feeds",
    "atom_items",
}


class DatabaseSchema:
    """Database schema manager for the FeedPulse SQLite database."""

    def __init__(self, db_path: str = "data/feedpulse.db"):
        """Initialize database schema manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("PRAGMA foreign_keys = ON")

            # Create tables in dependency order
            self._create_feeds_table(conn)
            self._create_rss_feeds_table(conn)
            self._create_atom_feeds_table(conn)
            self._create_rss_items_table(conn)
            self._create_atom_items_table(conn)

            self._create_indexes(conn)

            conn.commit()
            logger.info("Database schema created successfully")

    def _create_feeds_table(self, conn: sqlite3.Connection) -> None:
        """Create the feed registry."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS feeds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL UNIQUE,
                format TEXT NOT NULL CHECK (format IN ('rss', 'atom')),
                title TEXT NOT NULL DEFAULT '',
                custom_title TEXT,
                category TEXT,
                description TEXT,
                link TEXT,
                ttl INTEGER,
                skip_hours TEXT NOT NULL DEFAULT '[]',  -- JSON array of hours
                skip_days TEXT NOT NULL DEFAULT '[]',   -- JSON array of day names
                etag TEXT,
                last_modified TEXT,
                last_polled_at TIMESTAMP,
                last_success_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

    def _create_rss_feeds_table(self, conn: sqlite3.Connection) -> None:
        """Create RSS channel metadata table."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rss_feeds (
                feed_id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                link TEXT NOT NULL,
                description TEXT,
                language TEXT,
                copyright TEXT,
                managing_editor TEXT,
                web_master TEXT,
                pub_date TIMESTAMP,
                last_build_date TIMESTAMP,
                category TEXT NOT NULL DEFAULT '[]',  -- JSON array
                docs TEXT,
                ttl INTEGER,
                image TEXT,
                skip_hours TEXT NOT NULL DEFAULT '[]',
                skip_days TEXT NOT NULL DEFAULT '[]',
                FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE
            )
        """
        )

    def _create_atom_feeds_table(self, conn: sqlite3.Connection) -> None:
        """Create Atom feed metadata table."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS atom_feeds (
                feed_id INTEGER PRIMARY KEY,
                atom_id TEXT NOT NULL,
                title TEXT NOT NULL,
                updated TIMESTAMP,
                author TEXT NOT NULL DEFAULT '[]',  -- JSON array of names
                link TEXT,
                category TEXT NOT NULL DEFAULT '[]',
                icon TEXT,
                logo TEXT,
                rights TEXT,
                subtitle TEXT,
                FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE
            )
        """
        )

    def _create_rss_items_table(self, conn: sqlite3.Connection) -> None:
        """Create RSS item table keyed by (feed_id, guid)."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rss_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feed_id INTEGER NOT NULL,
                guid TEXT NOT NULL,
                title TEXT,
                link TEXT,
                description TEXT,
                pub_date TIMESTAMP,
                author TEXT,
                category TEXT NOT NULL DEFAULT '[]',
                comments TEXT,
                enclosure TEXT,  -- JSON object
                source TEXT,     -- JSON object
                discovered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE,
                UNIQUE(feed_id, guid)
            )
        """
        )

    def _create_atom_items_table(self, conn: sqlite3.Connection) -> None:
        """Create Atom entry table keyed by (feed_id, entry_id)."""
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS atom_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feed_id INTEGER NOT NULL,
                entry_id TEXT NOT NULL,
                title TEXT,
                link TEXT,
                updated TIMESTAMP,
                published TIMESTAMP,
                author TEXT,
                contributor TEXT NOT NULL DEFAULT '[]',  -- JSON array of names
                category TEXT NOT NULL DEFAULT '[]',
                rights TEXT,
                source TEXT,  -- JSON object
                summary TEXT,
                discovered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (feed_id) REFERENCES feeds(id) ON DELETE CASCADE,
                UNIQUE(feed_id, entry_id)
            )
        """
        )

    def _create_indexes(self, conn: sqlite3.Connection) -> None:
        """Create database indexes for the scheduler and item listings."""
        indexes = [
            "CREATE INDEX IF NOT EXISTS idx_feeds_last_success ON feeds(last_success_at)",
            "CREATE INDEX IF NOT EXISTS idx_feeds_category ON feeds(category)",
            "CREATE INDEX IF NOT EXISTS idx_rss_items_feed ON rss_items(feed_id, discovered_at)",
            "CREATE INDEX IF NOT EXISTS idx_atom_items_feed ON atom_items(feed_id, discovered_at)",
        ]

        for index_sql in indexes:
            conn.execute(index_sql)

    def drop_tables(self) -> None:
        """Drop all tables (for testing/reset purposes)."""
        with sqlite3.connect(self.db_path) as conn:
            # Drop in reverse dependency order
            tables = [
                "atom_items",
                "rss_items",
                "atom_feeds",
                "rss_feeds",
                "feeds",
            ]

            for table in tables:
                conn.execute(f"DROP TABLE IF EXISTS {table}")

            conn.commit()
            logger.info("All database tables dropped")

    def get_connection(self) -> sqlite3.Connection:
        """Get database connection with foreign keys enabled."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.row_factory = sqlite3.Row
        return conn

    def verify_schema(self) -> bool:
        """Verify database schema is correctly created."""
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT name FROM sqlite_master
                WHERE type='table' AND name NOT LIKE 'sqlite_%'
                ORDER BY name
            """
            )

            tables = {row[0] for row in cursor.fetchall()}

            if not EXPECTED_TABLES.issubset(tables):
                logger.error(
                    f"Missing tables. Expected: {EXPECTED_TABLES}, Found: {tables}"
                )
                return False

            violations = conn.execute("PRAGMA foreign_key_check").fetchall()
            if violations:
                logger.error(f"Foreign key violations found: {len(violations)}")
                return False

            logger.info("Database schema verification passed")
            return True

        except sqlite3.Error as e:
            logger.error(f"Schema verification failed: {e}")
            return False
        finally:
            conn.close()


def create_tables(db_path: str = "data/feedpulse.db") -> None:
    """Convenience function to create database tables.

    Args:
        db_path: Path to SQLite database file
    """
    schema = DatabaseSchema(db_path)
    schema.create_tables()
