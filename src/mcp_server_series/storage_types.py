"""
Storage Types and Data Classes

This module contains the core data structures and enums used by the series cache.
"""

from dataclasses import dataclass, field
from enum import Enum


class MetadataBackend(Enum):
    """Persistence backend for the cache metadata index."""

    JSON = "json"
    DISKCACHE = "diskcache"


@dataclass
class CacheStats:
    """Cache statistics for monitoring, computed from the metadata index."""

    total_size: int
    total_items: int
    collection_count: int
    max_size: int
    usage_fraction: float
    disk_usage_percent: float = 0.0


@dataclass
class EvictionReport:
    """Outcome of one eviction pass."""

    expired: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    freed_bytes: int = 0

    @property
    def removed(self) -> list[str]:
        return self.expired + self.evicted
