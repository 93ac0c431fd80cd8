"""
FeedPulse Recovery
==================

Backoff policy for transient poll failures.
"""

from .retry_logic import BackoffPolicy

__all__ = ["BackoffPolicy"]
