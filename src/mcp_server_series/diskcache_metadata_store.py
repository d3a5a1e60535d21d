"""
DiskCache-based Metadata Store

Persists the metadata index inside an embedded diskcache (SQLite) store.
The whole index is kept under a single key, so each save replaces it in one
transaction and an interrupted write leaves the previous index intact.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import diskcache

from .base_metadata_store import MetadataStore
from .collection_metadata import CollectionEntry, decode_index, encode_index
from .exceptions import MetadataCorruptError, StorageError

logger = logging.getLogger(__name__)

INDEX_KEY = "index:collections"


class DiskCacheMetadataStore(MetadataStore):
    """MetadataStore backed by a diskcache.Cache directory."""

    def __init__(self, directory: str | Path) -> None:
        """
        Initialize DiskCacheMetadataStore.

        Args:
            directory: Directory for the diskcache database files
        """
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        # No size limit or eviction: the index is a single small value
        self._cache = diskcache.Cache(
            directory=str(self._directory),
            eviction_policy="none",
        )

    @property
    def directory(self) -> Path:
        return self._directory

    def close(self) -> None:
        """Close the cache and cleanup resources."""
        if hasattr(self, "_cache"):
            self._cache.close()

    def load(self) -> dict[str, CollectionEntry]:
        try:
            payload = self._cache.get(INDEX_KEY)
        except (sqlite3.Error, OSError, ValueError) as e:
            raise MetadataCorruptError(
                f"Failed to read metadata index from {self._directory}: {e}"
            ) from e
        if payload is None:
            return {}
        return decode_index(payload)

    def save(self, index: dict[str, CollectionEntry]) -> None:
        payload = encode_index(index)
        try:
            self._cache.set(INDEX_KEY, payload)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to save metadata index to {self._directory}: {e}")
            raise StorageError(f"Failed to save metadata index: {e}") from e
