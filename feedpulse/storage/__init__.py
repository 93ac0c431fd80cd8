"""
FeedPulse Storage Layer
=======================

Transactional persistence and deduplication of feeds and items.
"""

from .feed_store import CycleResult, FeedStore

__all__ = [
    "CycleResult",
    "FeedStore",
]
