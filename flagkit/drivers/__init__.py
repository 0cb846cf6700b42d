"""
Feature value drivers.
"""

from .base import BaseDriver, StoredValue, constant
from .cache import CacheDriver, normalize_ttl
from .database import DatabaseDriver
from .memory import MemoryDriver

__all__ = [
    "BaseDriver",
    "StoredValue",
    "constant",
    "CacheDriver",
    "normalize_ttl",
    "DatabaseDriver",
    "MemoryDriver",
]
