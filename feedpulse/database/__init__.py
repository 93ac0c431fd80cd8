"""
FeedPulse Database Layer
========================

SQLite schema, pooled connections and the canonical data models.
"""
