"""
Collection Metadata

This module contains the CollectionEntry and ItemEntry classes used by the
ContentCache to track collection access times, sizes and item membership, and
the JSON codec used by the metadata stores to persist them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .exceptions import MetadataCorruptError
from .utils.key_utils import normalize_collection_id, validate_item_id

INDEX_FORMAT_VERSION = 1


@dataclass
class ItemEntry:
    """Metadata for one cached artifact."""

    item_id: str
    size_bytes: int
    cached_at: float


@dataclass
class CollectionEntry:
    """Metadata for one cached collection stored on the filesystem."""

    collection_id: str
    created_at: float
    last_accessed_at: float
    access_count: int = 0
    items: dict[str, ItemEntry] = field(default_factory=dict)  # item_id -> entry

    @property
    def total_size_bytes(self) -> int:
        return sum(item.size_bytes for item in self.items.values())

    def touch(self, now: float) -> None:
        """Record an access; last_accessed_at never moves backwards."""
        self.last_accessed_at = max(now, self.last_accessed_at, self.created_at)
        self.access_count += 1

    def copy(self) -> CollectionEntry:
        return CollectionEntry(
            collection_id=self.collection_id,
            created_at=self.created_at,
            last_accessed_at=self.last_accessed_at,
            access_count=self.access_count,
            items={
                item_id: ItemEntry(item.item_id, item.size_bytes, item.cached_at)
                for item_id, item in self.items.items()
            },
        )


def _entry_to_dict(entry: CollectionEntry) -> dict[str, Any]:
    return {
        "created_at": entry.created_at,
        "last_accessed_at": entry.last_accessed_at,
        "access_count": entry.access_count,
        "items": {
            item_id: {"size_bytes": item.size_bytes, "cached_at": item.cached_at}
            for item_id, item in entry.items.items()
        },
    }


def _checked_id(stored: str, normalized: str) -> str:
    # Ids become path components under the cache root
    if stored != normalized:
        raise ValueError(f"id is not in normalized form: {stored!r}")
    return stored


def _entry_from_dict(collection_id: str, raw: dict[str, Any]) -> CollectionEntry:
    collection_id = _checked_id(collection_id, normalize_collection_id(collection_id))
    created_at = float(raw["created_at"])
    items = {
        str(item_id): ItemEntry(
            item_id=_checked_id(str(item_id), validate_item_id(str(item_id))),
            size_bytes=int(item["size_bytes"]),
            cached_at=float(item["cached_at"]),
        )
        for item_id, item in raw["items"].items()
    }
    return CollectionEntry(
        collection_id=collection_id,
        created_at=created_at,
        last_accessed_at=max(float(raw["last_accessed_at"]), created_at),
        access_count=int(raw["access_count"]),
        items=items,
    )


def encode_index(index: dict[str, CollectionEntry]) -> str:
    """Serialize the full index to a JSON document."""
    payload = {
        "version": INDEX_FORMAT_VERSION,
        "collections": {
            collection_id: _entry_to_dict(entry)
            for collection_id, entry in sorted(index.items())
        },
    }
    return json.dumps(payload, indent=2, sort_keys=True)


def decode_index(text: str | bytes) -> dict[str, CollectionEntry]:
    """
    Parse a JSON document produced by encode_index.

    Raises:
        MetadataCorruptError: If the document is not valid JSON or has the wrong shape
    """
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MetadataCorruptError(f"Metadata index is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MetadataCorruptError("Metadata index must be a JSON object")
    if payload.get("version") != INDEX_FORMAT_VERSION:
        raise MetadataCorruptError(
            f"Unsupported metadata index version: {payload.get('version')!r}"
        )

    collections = payload.get("collections")
    if not isinstance(collections, dict):
        raise MetadataCorruptError("Metadata index has no 'collections' mapping")

    index: dict[str, CollectionEntry] = {}
    for collection_id, raw in collections.items():
        try:
            index[str(collection_id)] = _entry_from_dict(str(collection_id), raw)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MetadataCorruptError(
                f"Malformed entry for collection '{collection_id}': {e}"
            ) from e
    return index
