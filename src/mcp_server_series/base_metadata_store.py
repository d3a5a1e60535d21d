"""
Abstract Base Metadata Store

This module contains the abstract base class that defines the interface
for all metadata index persistence implementations.
"""

from abc import ABC, abstractmethod

from .collection_metadata import CollectionEntry


class MetadataStore(ABC):
    """
    Abstract base class for metadata index persistence.

    The ContentCache keeps the index in memory and hands the full mapping to
    the store after every mutation. Implementations must replace the
    persisted index atomically so an interrupted write never leaves a
    truncated index behind.
    """

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    @abstractmethod
    def load(self) -> dict[str, CollectionEntry]:
        """
        Load the persisted index.

        Returns:
            Mapping of collection id to entry; empty if nothing was persisted yet

        Raises:
            MetadataCorruptError: If the persisted index is unreadable
        """
        pass

    @abstractmethod
    def save(self, index: dict[str, CollectionEntry]) -> None:
        """
        Replace the persisted index with the given mapping.

        Args:
            index: Full mapping of collection id to entry

        Raises:
            StorageError: If the index could not be written
        """
        pass

    def close(self) -> None:
        """Release any resources held by the store."""
