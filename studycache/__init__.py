"""Tiered caching for the study platform: Redis-backed with an in-memory fallback."""

__version__ = "1.0.0"
