"""
TTL Listing Provider (Cacheout-backed)

Wraps a ContentProvider and memoises list_items results per group reference
for a short TTL, so rapid repeated requests for the same series do not each
hit the upstream provider. Artifact fetches are passed straight through.

Design notes:
- Uses a single Cacheout cache keyed by group_ref.
- Failed listings are never cached.
- A TTL of 0 disables memoisation entirely.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, cast

from cacheout import Cache

from .collaborators import ContentProvider, ProviderItem


class CachedListingProvider(ContentProvider):
    """ContentProvider decorator with a TTL memo for listings."""

    def __init__(
        self,
        provider: ContentProvider,
        ttl_seconds: float = 60.0,
        max_groups: int = 256,
    ) -> None:
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._listings = Cache(maxsize=max_groups, ttl=ttl_seconds)
        self._lock = threading.RLock()

    @property
    def provider(self) -> ContentProvider:
        return self._provider

    async def list_items(self, group_ref: str) -> list[ProviderItem]:
        if self._ttl_seconds <= 0:
            return await self._provider.list_items(group_ref)

        with self._lock:
            cached = cast(Optional[tuple], self._listings.get(group_ref))
        if cached is not None:
            return list(cached)

        items = await self._provider.list_items(group_ref)
        with self._lock:
            # Stored as a tuple so callers cannot mutate the memoised listing
            self._listings.set(group_ref, tuple(items), ttl=self._ttl_seconds)
        return list(items)

    async def fetch_item(self, item: ProviderItem, dest_dir: Path) -> Path:
        return await self._provider.fetch_item(item, dest_dir)

    def invalidate(self, group_ref: str | None = None) -> None:
        """Forget one memoised listing, or all of them."""
        with self._lock:
            if group_ref is None:
                self._listings.clear()
            else:
                self._listings.delete(group_ref)
