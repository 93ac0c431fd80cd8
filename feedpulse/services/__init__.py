"""
FeedPulse Services
==================

Shared service layer used by the CLI and the daemon.
"""

from .subscription_service import ImportReport, SubscriptionService

__all__ = [
    "ImportReport",
    "SubscriptionService",
]
