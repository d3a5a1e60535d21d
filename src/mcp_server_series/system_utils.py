import logging

import psutil

from .content_cache import ContentCache

logger = logging.getLogger(__name__)

MB = 1024**2
GB = 1024**3


def format_cache_status(cache: ContentCache) -> str:
    """One-line summary of cache usage and host disk usage."""
    stats = cache.stats()
    du = psutil.disk_usage(str(cache.root))
    return (
        f"Cache={stats.total_size / MB:.2f}MB/{stats.max_size / MB:.2f}MB "
        f"({stats.usage_fraction * 100:.2f}%) | Files={stats.total_items} | "
        f"Series={stats.collection_count} | Disk used={du.percent:.1f}% "
        f"({du.used // GB}GB/{du.total // GB}GB)"
    )


def log_system_status(cache: ContentCache) -> None:
    """Log cache statistics together with host disk usage."""
    try:
        logger.info(format_cache_status(cache))
    except OSError as exc:
        logger.debug(f"Failed to log system status: {exc}")
