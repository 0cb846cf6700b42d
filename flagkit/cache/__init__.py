"""
Cache backends used by the cache driver and the cache snapshot repository.
"""

from .base import CacheBackend, CacheLock
from .memory import MemoryCacheBackend
from .redis import RedisCacheBackend

__all__ = [
    "CacheBackend",
    "CacheLock",
    "MemoryCacheBackend",
    "RedisCacheBackend",
]
