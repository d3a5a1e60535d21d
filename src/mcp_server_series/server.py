import logging
import os
import sys
from dataclasses import asdict
from typing import Any

# FastMCP 2.0 import
from fastmcp import FastMCP

from .collaborators import (
    CollectionResolver,
    ContentProvider,
    DeliveryTransport,
    StaticCollectionResolver,
)
from .config import CacheConfig, CoordinatorConfig
from .content_cache import ContentCache
from .delivery_coordinator import DeliveryCoordinator, DeliveryResult
from .local_adapters import DirectoryContentProvider, OutboxTransport
from .message_handler import MessageHandler
from .system_utils import log_system_status
from .ttl_listing_provider import CachedListingProvider
from .utils.key_utils import validate_recipient_key

logger = logging.getLogger(__name__)

SERVER_TITLE = "Series Delivery Cache 📺"


def configure_logging() -> None:
    """Ensure logs are visible in the FastMCP subprocess even if no handlers configured."""
    package_logger = logging.getLogger("mcp_server_series")
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.INFO)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        )
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)


def _result_to_dict(result: DeliveryResult) -> dict[str, Any]:
    payload = asdict(result)
    payload["outcome"] = result.outcome.value
    return payload


class SeriesService:
    """Wires the cache, coordinator and message handler for one bot account."""

    def __init__(
        self,
        cache: ContentCache,
        provider: ContentProvider,
        transport: DeliveryTransport,
        resolver: CollectionResolver,
        coordinator_config: CoordinatorConfig | None = None,
    ) -> None:
        coordinator_config = coordinator_config or CoordinatorConfig()
        if coordinator_config.listing_ttl_seconds > 0:
            provider = CachedListingProvider(
                provider, ttl_seconds=coordinator_config.listing_ttl_seconds
            )

        self.cache = cache
        self.resolver = resolver
        self.coordinator = DeliveryCoordinator(
            cache, provider, transport, resolver, coordinator_config
        )
        self.handler = MessageHandler(self.coordinator, resolver, transport)

    @classmethod
    def from_env(cls) -> "SeriesService":
        """Build a service over local directories configured by SERIES_* variables."""
        mapping_file = os.environ.get("SERIES_MAPPING_FILE")
        resolver = (
            StaticCollectionResolver.from_json_file(mapping_file)
            if mapping_file
            else StaticCollectionResolver({})
        )
        library_dir = os.environ.get("SERIES_LIBRARY_DIR", "./library")
        outbox_dir = os.environ.get("SERIES_OUTBOX_DIR", "./outbox")
        return cls(
            cache=ContentCache(CacheConfig.from_env()),
            provider=DirectoryContentProvider(library_dir),
            transport=OutboxTransport(outbox_dir),
            resolver=resolver,
            coordinator_config=CoordinatorConfig.from_env(),
        )

    def close(self) -> None:
        self.cache.close()

    async def handle_message(self, recipient_key: str, text: str) -> dict[str, Any]:
        handled = await self.handler.handle(recipient_key, text)
        return {
            "command": handled.command.value,
            "reply": handled.reply,
            "delivery": _result_to_dict(handled.delivery)
            if handled.delivery is not None
            else None,
        }

    async def request_series(
        self, recipient_key: str, series_code: str
    ) -> dict[str, Any]:
        recipient_key = validate_recipient_key(recipient_key)
        result = await self.coordinator.deliver_collection(recipient_key, series_code)
        return _result_to_dict(result)

    def list_series(self) -> list[dict[str, Any]]:
        cached = {entry.collection_id: entry for entry in self.cache.list_collections()}
        listing = []
        for code in self.resolver.collection_ids():
            entry = cached.get(code)
            listing.append(
                {
                    "series_code": code,
                    "cached_items": len(entry.items) if entry else 0,
                    "cached_bytes": entry.total_size_bytes if entry else 0,
                }
            )
        return listing

    def cache_stats(self) -> dict[str, Any]:
        log_system_status(self.cache)
        stats = asdict(self.cache.stats())
        stats["active_recipients"] = self.coordinator.active_recipients()
        return stats

    def cleanup_cache(self) -> dict[str, Any]:
        report = self.cache.run_eviction()
        return {
            "expired": report.expired,
            "evicted": report.evicted,
            "freed_bytes": report.freed_bytes,
        }

    def remove_series(self, series_code: str) -> bool:
        return self.cache.remove_collection(series_code)

    def clear_cache(self) -> int:
        return self.cache.clear()


def build_server(service: SeriesService) -> FastMCP:
    """Create the FastMCP server exposing a SeriesService."""
    mcp = FastMCP(SERVER_TITLE)

    # === TOOLS ===
    @mcp.tool
    async def handle_message(recipient_key: str, text: str) -> dict[str, Any]:
        """Handle an inbound chat message (list, help, or a series code).

        Args:
            recipient_key: Sender identifier; deliveries are serialized per sender
            text: Message body

        Returns:
            The parsed command, any text reply, and the delivery summary
        """
        return await service.handle_message(recipient_key, text)

    @mcp.tool
    async def request_series(recipient_key: str, series_code: str) -> dict[str, Any]:
        """Deliver every video of a series to a recipient, serving from cache when possible.

        Args:
            recipient_key: Recipient identifier
            series_code: Series code such as AB001

        Returns:
            Delivery summary; outcome "busy" if a delivery is already running
        """
        return await service.request_series(recipient_key, series_code)

    @mcp.tool
    def list_series() -> list[dict[str, Any]]:
        """List known series codes with how much of each is cached."""
        return service.list_series()

    @mcp.tool
    def cache_stats() -> dict[str, Any]:
        """Report cache size, item counts and active deliveries."""
        return service.cache_stats()

    @mcp.tool
    def cleanup_cache() -> dict[str, Any]:
        """Run age-based then size-based eviction now."""
        return service.cleanup_cache()

    @mcp.tool
    def remove_series(series_code: str) -> bool:
        """Remove one series from the cache. Returns False if it was not cached."""
        return service.remove_series(series_code)

    @mcp.tool
    def clear_cache() -> int:
        """Remove every cached series. Returns the number removed."""
        return service.clear_cache()

    return mcp


# === MAIN ENTRY POINT ===
def main():
    """Main entry point for the FastMCP 2.0 server."""
    configure_logging()
    logger.info("Starting FastMCP 2.0 series delivery server")
    service = SeriesService.from_env()
    try:
        build_server(service).run()
    finally:
        service.close()


if __name__ == "__main__":
    main()
