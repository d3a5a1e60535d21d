"""
Configuration

Explicit, validated configuration for the series cache and the delivery
coordinator. Values are passed in at construction; only the server entry
point reads them from the environment.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field

from .storage_types import MetadataBackend

DEFAULT_MAX_CACHE_SIZE = 1024**3  # 1 GiB
DEFAULT_MAX_AGE_SECONDS = 7 * 24 * 60 * 60  # 7 days


def _default_cache_dir() -> str:
    return os.path.join(tempfile.gettempdir(), "series_cache")


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() in {"none", "off"}:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class CacheConfig:
    """
    Settings for ContentCache.

    Attributes:
        cache_dir: Root directory holding one sub-directory per collection
        max_cache_size: Capacity in bytes before LRU eviction kicks in
        max_age_seconds: Age since creation after which a collection is dropped
        eviction_target_ratio: Size eviction stops at this fraction of capacity
        metadata_backend: Where the metadata index is persisted
        metadata_filename: Index file name for the JSON backend
        artifact_suffix: File suffix appended to item ids on disk
        evict_on_startup: Run an eviction pass when the cache is opened
    """

    cache_dir: str = field(default_factory=_default_cache_dir)
    max_cache_size: int = DEFAULT_MAX_CACHE_SIZE
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS
    eviction_target_ratio: float = 0.8
    metadata_backend: MetadataBackend = MetadataBackend.JSON
    metadata_filename: str = "metadata.json"
    artifact_suffix: str = ".mp4"
    evict_on_startup: bool = True

    def __post_init__(self) -> None:
        if not self.cache_dir:
            raise ValueError("cache_dir must be a non-empty path")
        if self.max_cache_size <= 0:
            raise ValueError("max_cache_size must be positive")
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        if not 0 < self.eviction_target_ratio <= 1:
            raise ValueError("eviction_target_ratio must be in (0, 1]")
        if not self.metadata_filename or os.sep in self.metadata_filename:
            raise ValueError("metadata_filename must be a plain file name")
        if os.sep in self.artifact_suffix:
            raise ValueError("artifact_suffix must not contain path separators")

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Build a config from SERIES_CACHE_* environment variables."""
        backend = os.environ.get("SERIES_CACHE_METADATA_BACKEND", "json").lower()
        return cls(
            cache_dir=os.environ.get("SERIES_CACHE_DIR") or _default_cache_dir(),
            max_cache_size=int(
                _env_float("SERIES_CACHE_MAX_BYTES", DEFAULT_MAX_CACHE_SIZE)
                or DEFAULT_MAX_CACHE_SIZE
            ),
            max_age_seconds=_env_float(
                "SERIES_CACHE_MAX_AGE_SECONDS", DEFAULT_MAX_AGE_SECONDS
            )
            or DEFAULT_MAX_AGE_SECONDS,
            metadata_backend=MetadataBackend(backend),
            evict_on_startup=_env_bool("SERIES_CACHE_EVICT_ON_STARTUP", True),
        )


@dataclass(frozen=True)
class CoordinatorConfig:
    """
    Settings for DeliveryCoordinator.

    Timeouts are in seconds; None disables the bound for that step.
    """

    list_timeout_seconds: float | None = 120.0
    fetch_timeout_seconds: float | None = 600.0
    delivery_timeout_seconds: float | None = 300.0
    send_delay_seconds: float = 2.0
    transient_dir: str | None = None
    listing_ttl_seconds: float = 60.0

    def __post_init__(self) -> None:
        for name in (
            "list_timeout_seconds",
            "fetch_timeout_seconds",
            "delivery_timeout_seconds",
        ):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or None")
        if self.send_delay_seconds < 0:
            raise ValueError("send_delay_seconds must not be negative")
        if self.listing_ttl_seconds < 0:
            raise ValueError("listing_ttl_seconds must not be negative")

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        """Build a config from SERIES_DELIVERY_* environment variables."""
        defaults = cls()
        return cls(
            list_timeout_seconds=_env_float(
                "SERIES_DELIVERY_LIST_TIMEOUT", defaults.list_timeout_seconds
            ),
            fetch_timeout_seconds=_env_float(
                "SERIES_DELIVERY_FETCH_TIMEOUT", defaults.fetch_timeout_seconds
            ),
            delivery_timeout_seconds=_env_float(
                "SERIES_DELIVERY_SEND_TIMEOUT", defaults.delivery_timeout_seconds
            ),
            send_delay_seconds=_env_float(
                "SERIES_DELIVERY_SEND_DELAY", defaults.send_delay_seconds
            )
            or 0.0,
            transient_dir=os.environ.get("SERIES_DELIVERY_TRANSIENT_DIR") or None,
            listing_ttl_seconds=_env_float(
                "SERIES_DELIVERY_LISTING_TTL", defaults.listing_ttl_seconds
            )
            or 0.0,
        )
