"""
Tagged cache module.
"""

from kvqueue.cache.tagged import TaggedCache

__all__ = ["TaggedCache"]
