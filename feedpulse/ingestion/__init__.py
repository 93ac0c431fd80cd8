"""
FeedPulse Ingestion Module
==========================

Feed retrieval and parsing components.

This module handles:
- Conditional HTTP fetching with failure classification
- RSS 2.0 and Atom 1.0 parsing into the canonical model
- OPML subscription lists
"""
