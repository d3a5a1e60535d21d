"""
Delivery Coordinator

Serializes fetch-and-deliver work per recipient: at most one collection
delivery runs for a given recipient at a time, and a second request for a
busy recipient is rejected immediately instead of being queued.

Within one delivery, items are resolved (cache first, provider on miss) and
delivered strictly in provider order, one at a time. Different recipients
proceed concurrently; every await is a point where they may interleave.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Iterator, TypeVar

from . import messages
from .collaborators import (
    CollectionResolver,
    ContentProvider,
    DeliveryTransport,
    ProviderItem,
)
from .config import CoordinatorConfig
from .content_cache import ContentCache
from .exceptions import (
    CollectionNotFoundError,
    DeliveryError,
    ProviderError,
    RecipientBusyError,
    StorageError,
)
from .utils.key_utils import normalize_collection_id, validate_recipient_key

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeliveryOutcome(Enum):
    """How a delivery request ended."""

    COMPLETED = "completed"
    BUSY = "busy"
    NOT_FOUND = "not_found"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class RecipientLock:
    """In-memory marker for a recipient with a delivery in flight."""

    recipient_key: str
    active_collection_id: str
    started_at: float


@dataclass
class DeliveryResult:
    """Summary of one deliver_collection call."""

    recipient_key: str
    collection_id: str
    outcome: DeliveryOutcome
    total_items: int = 0
    delivered: int = 0
    cache_hits: int = 0
    skipped: list[str] = field(default_factory=list)
    fully_cached: bool = False
    error: str | None = None


class DeliveryCoordinator:
    """
    Per-recipient mutual exclusion around cache-or-fetch delivery.

    Construct one instance at startup and pass it to whatever dispatches
    inbound requests.
    """

    def __init__(
        self,
        cache: ContentCache,
        provider: ContentProvider,
        transport: DeliveryTransport,
        resolver: CollectionResolver,
        config: CoordinatorConfig | None = None,
    ) -> None:
        self._cache = cache
        self._provider = provider
        self._transport = transport
        self._resolver = resolver
        self._config = config or CoordinatorConfig()

        # recipient_key -> lock; absence means idle
        self._active: dict[str, RecipientLock] = {}
        self._active_guard = threading.Lock()

    # Busy map
    def _acquire(self, recipient_key: str, collection_id: str) -> RecipientLock:
        with self._active_guard:
            current = self._active.get(recipient_key)
            if current is not None:
                raise RecipientBusyError(recipient_key, current.active_collection_id)
            lock = RecipientLock(recipient_key, collection_id, time.time())
            self._active[recipient_key] = lock
            return lock

    def _release(self, recipient_key: str) -> None:
        with self._active_guard:
            self._active.pop(recipient_key, None)

    @contextmanager
    def recipient_lock(
        self, recipient_key: str, collection_id: str
    ) -> Iterator[RecipientLock]:
        """
        Hold the busy marker for a recipient for the duration of the block.

        Raises:
            RecipientBusyError: If the recipient already has work in flight
        """
        lock = self._acquire(recipient_key, collection_id)
        try:
            yield lock
        finally:
            self._release(recipient_key)

    def is_busy(self, recipient_key: str) -> bool:
        with self._active_guard:
            return recipient_key.strip() in self._active

    def active_collection(self, recipient_key: str) -> str | None:
        with self._active_guard:
            lock = self._active.get(recipient_key.strip())
            return lock.active_collection_id if lock is not None else None

    def active_recipients(self) -> dict[str, str]:
        """Snapshot of recipient_key -> collection currently being delivered."""
        with self._active_guard:
            return {
                key: lock.active_collection_id for key, lock in self._active.items()
            }

    # Helpers
    async def _with_timeout(self, awaitable: Awaitable[T], timeout: float | None) -> T:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)

    async def _notify(self, recipient_key: str, text: str) -> None:
        try:
            await self._transport.send_text(recipient_key, text)
        except Exception as e:  # noqa: BLE001
            # Status messages are best-effort; the delivery itself carries on
            logger.warning(f"Failed to send message to {recipient_key}: {e}")

    async def _resolve_artifact(
        self, collection_id: str, item: ProviderItem, work_dir: Path
    ) -> tuple[Path, Path | None]:
        """Return (path to deliver, transient file to delete afterwards)."""
        cached = await asyncio.to_thread(
            self._cache.get_item, collection_id, item.item_id
        )
        if cached is not None:
            logger.info(f"Using cached version of {collection_id}/{item.item_id}")
            return cached, None

        fetched = await self._fetch_and_cache(collection_id, item, work_dir)
        # The transient copy cannot be evicted underneath the delivery
        return fetched, fetched

    async def _fetch_and_cache(
        self, collection_id: str, item: ProviderItem, work_dir: Path
    ) -> Path:
        logger.info(f"Fetching {collection_id}/{item.item_id} from provider")
        try:
            fetched = await self._with_timeout(
                self._provider.fetch_item(item, work_dir),
                self._config.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(f"Timed out fetching item {item.item_id}") from e

        try:
            await asyncio.to_thread(
                self._cache.put_item, collection_id, item.item_id, fetched
            )
        except StorageError as e:
            logger.warning(
                f"Failed to cache {collection_id}/{item.item_id}, "
                f"delivering uncached copy: {e}"
            )
        return fetched

    async def _deliver_one(
        self, recipient_key: str, artifact_path: Path, caption: str
    ) -> None:
        try:
            delivered = await self._with_timeout(
                self._transport.deliver(recipient_key, artifact_path, caption),
                self._config.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryError(f"Timed out delivering {artifact_path.name}") from e
        except OSError as e:
            raise DeliveryError(f"Failed to deliver {artifact_path.name}: {e}") from e
        if delivered is False:
            raise DeliveryError(f"Transport rejected {artifact_path.name}")

    async def _deliver_items(
        self,
        recipient_key: str,
        collection_id: str,
        items: list[ProviderItem],
        result: DeliveryResult,
    ) -> None:
        total = len(items)
        with tempfile.TemporaryDirectory(
            prefix="series-delivery-", dir=self._config.transient_dir
        ) as work_dir:
            for position, item in enumerate(items, 1):
                logger.info(f"Sending item {position}/{total} to {recipient_key}")
                transient: Path | None = None
                try:
                    path, transient = await self._resolve_artifact(
                        collection_id, item, Path(work_dir)
                    )
                    caption = messages.item_caption(position, total, item.caption)
                    try:
                        await self._deliver_one(recipient_key, path, caption)
                    except DeliveryError:
                        # A cached file may be evicted or removed mid-send
                        if transient is not None or path.exists():
                            raise
                        logger.warning(
                            f"Cached {collection_id}/{item.item_id} vanished "
                            f"during delivery, fetching again"
                        )
                        transient = await self._fetch_and_cache(
                            collection_id, item, Path(work_dir)
                        )
                        await self._deliver_one(recipient_key, transient, caption)
                    if transient is None:
                        result.cache_hits += 1
                    result.delivered += 1
                    logger.info(f"Item {position}/{total} sent successfully")
                except (ProviderError, StorageError, DeliveryError, ValueError) as e:
                    logger.error(
                        f"Skipping item {position}/{total} ({item.item_id}) "
                        f"for {recipient_key}: {e}"
                    )
                    result.skipped.append(item.item_id)
                    await self._notify(recipient_key, messages.item_skipped(position))
                finally:
                    if transient is not None:
                        transient.unlink(missing_ok=True)

                if position < total and self._config.send_delay_seconds > 0:
                    await asyncio.sleep(self._config.send_delay_seconds)

    def _resolve(self, requested_id: str) -> tuple[str, str]:
        """
        Map a requested id to (collection_id, group_ref).

        Raises:
            CollectionNotFoundError: If the id is malformed or unknown
        """
        try:
            collection_id = normalize_collection_id(requested_id)
        except ValueError as e:
            raise CollectionNotFoundError(requested_id.strip().upper()) from e
        group_ref = self._resolver.resolve(collection_id)
        if group_ref is None:
            raise CollectionNotFoundError(collection_id)
        return collection_id, group_ref

    async def _process(self, recipient_key: str, requested_id: str) -> DeliveryResult:
        try:
            collection_id, group_ref = self._resolve(requested_id)
        except CollectionNotFoundError as e:
            logger.info(f"Unknown collection {e.collection_id} from {recipient_key}")
            await self._notify(recipient_key, messages.not_found(e.collection_id))
            return DeliveryResult(
                recipient_key, e.collection_id, DeliveryOutcome.NOT_FOUND
            )

        result = DeliveryResult(recipient_key, collection_id, DeliveryOutcome.FAILED)

        await self._notify(recipient_key, messages.found(collection_id))
        try:
            items = await self._with_timeout(
                self._provider.list_items(group_ref),
                self._config.list_timeout_seconds,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to list {collection_id} ({group_ref}): {e!r}")
            await self._notify(recipient_key, messages.GENERIC_FAILURE)
            result.error = str(e) or type(e).__name__
            return result

        if not items:
            await self._notify(recipient_key, messages.EMPTY_COLLECTION)
            result.outcome = DeliveryOutcome.EMPTY
            return result

        result.total_items = len(items)
        try:
            result.fully_cached = await asyncio.to_thread(
                self._cache.has_collection,
                collection_id,
                [item.item_id for item in items],
            )
        except ValueError:
            result.fully_cached = False
        await self._notify(
            recipient_key, messages.listing_ready(len(items), result.fully_cached)
        )

        await self._deliver_items(recipient_key, collection_id, items, result)

        if result.skipped:
            await self._notify(
                recipient_key,
                messages.partial_delivery(result.delivered, result.total_items),
            )
        else:
            await self._notify(recipient_key, messages.ALL_DELIVERED)
        result.outcome = DeliveryOutcome.COMPLETED
        return result

    # Public interface
    async def deliver_collection(
        self, recipient_key: str, collection_id: str
    ) -> DeliveryResult:
        """
        Deliver every item of a collection to a recipient, in provider order.

        Args:
            recipient_key: Identifier of the recipient; the mutual-exclusion key
            collection_id: Requested collection (case-insensitive)

        Returns:
            DeliveryResult; outcome BUSY if the recipient already has a
            delivery in flight, in which case nothing else happens
        """
        recipient_key = validate_recipient_key(recipient_key)
        requested = (collection_id or "").strip()

        try:
            lock = self._acquire(recipient_key, requested.upper())
        except RecipientBusyError as e:
            logger.info(f"Rejecting request from busy recipient: {e}")
            await self._notify(recipient_key, messages.PLEASE_WAIT)
            return DeliveryResult(
                recipient_key, requested.upper(), DeliveryOutcome.BUSY
            )

        try:
            logger.info(
                f"Processing {lock.active_collection_id} for {recipient_key}"
            )
            return await self._process(recipient_key, requested)
        except Exception:
            logger.exception(f"Error delivering {requested} to {recipient_key}")
            await self._notify(recipient_key, messages.GENERIC_FAILURE)
            raise
        finally:
            self._release(recipient_key)
