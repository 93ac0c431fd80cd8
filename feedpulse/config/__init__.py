"""
FeedPulse Configuration
=======================

Pydantic settings loaded from FEEDPULSE_* environment variables and .env.
"""
