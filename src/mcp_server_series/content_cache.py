"""
Content Cache Implementation

A filesystem-backed cache of binary artifacts grouped into collections, with
a persisted metadata index and LRU + max-age eviction.

Layout under the cache root:
- <COLLECTION>/<item_id><suffix>  one directory per collection, one file per item
- metadata.json (or .index/)      the metadata index, the single source of truth
- .part-* / .trash-*               transient staging files and removed trees

Key properties:
- Artifacts are staged under a hidden name and renamed into place, so a
  partially written file is never visible to has_item/get_item
- The index is updated only after the artifact is in place
- Every index read-modify-write runs under one lock
- A corrupt or unreadable index is treated as an empty cache (fail-open)
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Iterable

import psutil

from .base_metadata_store import MetadataStore
from .collection_metadata import CollectionEntry, ItemEntry
from .config import CacheConfig
from .diskcache_metadata_store import DiskCacheMetadataStore
from .exceptions import MetadataCorruptError, StorageError
from .json_metadata_store import JsonFileMetadataStore
from .storage_types import CacheStats, EvictionReport, MetadataBackend
from .utils.key_utils import normalize_collection_id, validate_item_id

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DAY_SECONDS = 24 * 60 * 60

PART_PREFIX = ".part-"
TRASH_PREFIX = ".trash-"
DISKCACHE_INDEX_DIRNAME = ".index"


class ContentCache:
    """
    Disk-backed cache of collection artifacts with LRU and TTL eviction.

    The cache knows nothing about recipients; it only stores, serves and
    bounds artifacts. It is safe to share one instance between threads.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        store: MetadataStore | None = None,
    ) -> None:
        """
        Initialize ContentCache.

        Args:
            config: Cache settings; defaults to CacheConfig()
            store: Metadata store override; defaults to the configured backend
        """
        self._config = config or CacheConfig()
        self._root = Path(self._config.cache_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._store = store or self._create_store()

        # Re-entrant: put_item runs eviction while already holding the lock
        self._lock = threading.RLock()

        self._index: dict[str, CollectionEntry] = self._load_index()
        self._reconcile()

        if self._config.evict_on_startup:
            self.run_eviction()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    def close(self) -> None:
        """Close the metadata store."""
        if hasattr(self, "_store"):
            self._store.close()

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._root

    # Internal helpers
    def _now(self) -> float:
        return time.time()

    def _create_store(self) -> MetadataStore:
        if self._config.metadata_backend is MetadataBackend.DISKCACHE:
            return DiskCacheMetadataStore(self._root / DISKCACHE_INDEX_DIRNAME)
        return JsonFileMetadataStore(self._root / self._config.metadata_filename)

    def _load_index(self) -> dict[str, CollectionEntry]:
        try:
            return self._store.load()
        except MetadataCorruptError as e:
            logger.warning(f"Failed to load cache metadata, starting empty: {e}")
            return {}

    def _collection_id(self, collection_id: str) -> str:
        cid = normalize_collection_id(collection_id)
        if cid == self._config.metadata_filename.upper():
            raise ValueError(f"collection_id is reserved: {collection_id!r}")
        return cid

    def _collection_dir(self, cid: str) -> Path:
        return self._root / cid

    def _item_path(self, cid: str, iid: str) -> Path:
        return self._collection_dir(cid) / f"{iid}{self._config.artifact_suffix}"

    def _is_expired(self, entry: CollectionEntry, now: float) -> bool:
        # Freshness is measured from creation, not from the last access
        return (now - entry.created_at) > self._config.max_age_seconds

    def _total_size_locked(self) -> int:
        return sum(entry.total_size_bytes for entry in self._index.values())

    def _persist(self) -> None:
        self._store.save(self._index)

    def _persist_quietly(self) -> None:
        try:
            self._persist()
        except StorageError as e:
            logger.error(f"Failed to save cache metadata: {e}")

    def _is_owned_dir(self, path: Path) -> bool:
        """Check that path is a real directory directly under the cache root."""
        if path.is_symlink() or not path.is_dir():
            return False
        return path.resolve().parent == self._root.resolve()

    def _looks_like_collection_dir(self, path: Path) -> bool:
        """Check that an unindexed directory has the shape the cache writes."""
        try:
            if self._collection_id(path.name) != path.name:
                return False
        except ValueError:
            return False
        if not self._is_owned_dir(path):
            return False
        suffix = self._config.artifact_suffix
        for child in path.iterdir():
            if child.is_symlink() or not child.is_file():
                return False
            if suffix and not child.name.endswith(suffix):
                return False
        return True

    def _reconcile(self) -> None:
        """Bring the index and the directory tree back into agreement."""
        with self._lock:
            changed = False
            suffix = self._config.artifact_suffix

            for cid, entry in list(self._index.items()):
                cdir = self._collection_dir(cid)
                if not self._is_owned_dir(cdir):
                    logger.info(f"Dropping index entry without directory: {cid}")
                    del self._index[cid]
                    changed = True
                    continue
                for iid in list(entry.items):
                    if not self._item_path(cid, iid).is_file():
                        logger.info(f"Dropping missing item {cid}/{iid} from index")
                        del entry.items[iid]
                        changed = True
                if not entry.items:
                    shutil.rmtree(cdir, ignore_errors=True)
                    del self._index[cid]
                    changed = True
                    continue
                indexed = {f"{iid}{suffix}" for iid in entry.items}
                for child in cdir.iterdir():
                    if child.name not in indexed:
                        logger.info(f"Removing unindexed file {child}")
                        if child.is_dir() and not child.is_symlink():
                            shutil.rmtree(child, ignore_errors=True)
                        else:
                            child.unlink(missing_ok=True)

            metadata_tmp_prefix = f".{self._config.metadata_filename}."
            for child in self._root.iterdir():
                name = child.name
                if name.startswith(PART_PREFIX) or (
                    name.startswith(metadata_tmp_prefix) and name.endswith(".tmp")
                ):
                    child.unlink(missing_ok=True)
                elif name.startswith(TRASH_PREFIX) and self._is_owned_dir(child):
                    shutil.rmtree(child, ignore_errors=True)
                elif name not in self._index and self._looks_like_collection_dir(child):
                    logger.info(f"Removing orphaned collection directory {child}")
                    shutil.rmtree(child, ignore_errors=True)

            if changed:
                self._persist_quietly()

    def _remove_collection_locked(self, cid: str) -> bool:
        cdir = self._collection_dir(cid)
        trash: Path | None = None
        if cdir.exists():
            trash = self._root / f"{TRASH_PREFIX}{cid}-{uuid.uuid4().hex}"
            try:
                cdir.rename(trash)
            except OSError as e:
                logger.error(f"Failed to remove collection {cid}: {e}")
                raise StorageError(f"Failed to remove collection {cid}: {e}") from e

        existed = self._index.pop(cid, None) is not None
        if existed:
            self._persist()

        if trash is not None:
            shutil.rmtree(trash, ignore_errors=True)
            if trash.exists():
                logger.warning(f"Could not fully delete {trash}; will retry on restart")
        return existed or trash is not None

    def _run_eviction_locked(self, protect: str | None = None) -> EvictionReport:
        report = EvictionReport()
        now = self._now()

        # Age pass first so stale collections do not skew the size pass
        for cid, entry in sorted(self._index.items()):
            if not self._is_expired(entry, now):
                continue
            size = entry.total_size_bytes
            try:
                self._remove_collection_locked(cid)
            except StorageError:
                continue
            report.expired.append(cid)
            report.freed_bytes += size
            age_days = (now - entry.created_at) / DAY_SECONDS
            logger.info(f"Removed old collection: {cid} ({age_days:.1f} days old)")

        total = self._total_size_locked()
        limit = self._config.max_cache_size
        if total <= limit:
            return report

        target = limit * self._config.eviction_target_ratio
        logger.info(
            f"Cache size ({total / MB:.2f}MB) exceeds limit "
            f"({limit / MB:.2f}MB), cleaning..."
        )
        candidates = sorted(
            (entry.last_accessed_at, cid)
            for cid, entry in self._index.items()
            if cid != protect
        )
        for _, cid in candidates:
            if total <= target:
                break
            size = self._index[cid].total_size_bytes
            try:
                self._remove_collection_locked(cid)
            except StorageError:
                continue
            total -= size
            report.evicted.append(cid)
            report.freed_bytes += size
            logger.info(f"Evicted: {cid} (freed {size / MB:.2f}MB)")

        if total > limit:
            logger.warning(
                f"Cache still over capacity after eviction: {total / MB:.2f}MB"
            )
        return report

    # Public interface
    def has_item(self, collection_id: str, item_id: str) -> bool:
        """Check whether an artifact is on disk. Does not touch access metadata."""
        cid = self._collection_id(collection_id)
        iid = validate_item_id(item_id)
        return self._item_path(cid, iid).is_file()

    def has_collection(self, collection_id: str, item_ids: Iterable[str]) -> bool:
        """Check whether every id in item_ids is cached under collection_id."""
        return all(self.has_item(collection_id, item_id) for item_id in item_ids)

    def get_item(self, collection_id: str, item_id: str) -> Path | None:
        """
        Look up a cached artifact.

        Args:
            collection_id: The collection identifier
            item_id: The item identifier

        Returns:
            Path of the cached artifact, or None if it is not cached
        """
        cid = self._collection_id(collection_id)
        iid = validate_item_id(item_id)
        path = self._item_path(cid, iid)
        if not path.is_file():
            return None

        with self._lock:
            entry = self._index.get(cid)
            if entry is not None:
                entry.touch(self._now())
                self._persist_quietly()
        return path

    def put_item(
        self, collection_id: str, item_id: str, source_path: str | Path
    ) -> Path:
        """
        Copy an artifact into the cache and record it in the index.

        Args:
            collection_id: The collection identifier
            item_id: The item identifier
            source_path: File to copy from; left untouched

        Returns:
            Path of the cached artifact

        Raises:
            StorageError: If the artifact could not be copied or indexed
        """
        cid = self._collection_id(collection_id)
        iid = validate_item_id(item_id)
        source = Path(source_path)
        if not source.is_file():
            raise StorageError(f"Source artifact not found: {source}")

        staging = self._root / f"{PART_PREFIX}{uuid.uuid4().hex}"
        target = self._item_path(cid, iid)
        try:
            shutil.copyfile(source, staging)
            size = staging.stat().st_size

            with self._lock:
                now = self._now()
                entry = self._index.get(cid)
                if entry is not None and self._is_expired(entry, now):
                    logger.info(f"Collection {cid} is stale; starting it afresh")
                    self._remove_collection_locked(cid)
                    entry = None

                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(staging, target)

                if entry is None:
                    entry = CollectionEntry(
                        collection_id=cid, created_at=now, last_accessed_at=now
                    )
                    self._index[cid] = entry
                entry.items[iid] = ItemEntry(item_id=iid, size_bytes=size, cached_at=now)
                entry.touch(now)
                self._persist()

                self._run_eviction_locked(protect=cid)
        except OSError as e:
            logger.error(f"Failed to cache item {cid}/{iid}: {e}")
            raise StorageError(f"Failed to cache item {cid}/{iid}: {e}") from e
        finally:
            staging.unlink(missing_ok=True)

        return target

    def remove_collection(self, collection_id: str) -> bool:
        """
        Delete a collection's directory tree and index entry.

        Returns:
            True if anything was removed, False if the collection was absent
        """
        cid = self._collection_id(collection_id)
        with self._lock:
            return self._remove_collection_locked(cid)

    def run_eviction(self) -> EvictionReport:
        """Remove collections older than max_age, then trim LRU collections to fit."""
        with self._lock:
            report = self._run_eviction_locked()
        if report.removed:
            logger.info(
                f"Eviction removed {len(report.removed)} collection(s), "
                f"freed {report.freed_bytes / MB:.2f}MB"
            )
        return report

    def clear(self) -> int:
        """Remove every collection. Returns the number of collections removed."""
        with self._lock:
            removed = 0
            for cid in sorted(self._index):
                if self._remove_collection_locked(cid):
                    removed += 1
        logger.info(f"Cache cleared ({removed} collection(s))")
        return removed

    def get_collection(self, collection_id: str) -> CollectionEntry | None:
        """Return a copy of a collection's index entry, or None."""
        cid = self._collection_id(collection_id)
        with self._lock:
            entry = self._index.get(cid)
            return entry.copy() if entry is not None else None

    def list_collections(self) -> list[CollectionEntry]:
        """Return copies of all index entries, ordered by collection id."""
        with self._lock:
            return [self._index[cid].copy() for cid in sorted(self._index)]

    def get_oldest_collections(self, limit: int = 10) -> list[tuple[str, float]]:
        """
        Get the least recently accessed collections.

        Returns:
            List of (collection_id, last_accessed_at) tuples, oldest first
        """
        with self._lock:
            ordered = sorted(
                (entry.last_accessed_at, cid) for cid, entry in self._index.items()
            )
        return [(cid, last_access) for last_access, cid in ordered[:limit]]

    def stats(self) -> CacheStats:
        """Aggregate statistics computed from the index."""
        with self._lock:
            total_size = self._total_size_locked()
            total_items = sum(len(entry.items) for entry in self._index.values())
            collection_count = len(self._index)

        max_size = self._config.max_cache_size
        return CacheStats(
            total_size=total_size,
            total_items=total_items,
            collection_count=collection_count,
            max_size=max_size,
            usage_fraction=total_size / max_size,
            disk_usage_percent=self._get_disk_usage_percent(),
        )

    def _get_disk_usage_percent(self) -> float:
        """Get current disk usage percentage of the filesystem holding the cache."""
        try:
            disk_usage = psutil.disk_usage(str(self._root))
            return float(disk_usage.percent)
        except OSError:
            return 0.0
