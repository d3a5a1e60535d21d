"""
External Collaborators

Interfaces for the parties the delivery coordinator talks to: the content
provider that lists and fetches artifacts, the transport that delivers them
to a recipient, and the resolver that maps collection ids to provider group
references.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


@dataclass(frozen=True)
class ProviderItem:
    """One item in a provider listing."""

    item_id: str
    caption: str = ""
    ref: Any = None  # Provider-specific handle needed to fetch the item


class ContentProvider(ABC):
    """Source of collection listings and artifacts."""

    @abstractmethod
    async def list_items(self, group_ref: str) -> list[ProviderItem]:
        """
        List the items of a provider group.

        Args:
            group_ref: Provider-side reference returned by the resolver

        Returns:
            Items ordered oldest first

        Raises:
            ProviderError: If the listing could not be obtained
        """
        pass

    @abstractmethod
    async def fetch_item(self, item: ProviderItem, dest_dir: Path) -> Path:
        """
        Download an artifact into dest_dir.

        Args:
            item: Item from a previous list_items call
            dest_dir: Transient directory owned by the caller

        Returns:
            Path of the downloaded artifact

        Raises:
            ProviderError: If the artifact could not be fetched
        """
        pass


class DeliveryTransport(ABC):
    """Channel used to send artifacts and text to a recipient."""

    @abstractmethod
    async def deliver(
        self, recipient_key: str, artifact_path: Path, caption: str
    ) -> bool:
        """
        Send one artifact.

        Returns:
            True on success. Implementations may also raise DeliveryError.
        """
        pass

    @abstractmethod
    async def send_text(self, recipient_key: str, text: str) -> None:
        """Send a plain text message."""
        pass


class CollectionResolver(ABC):
    """Maps collection ids to provider group references."""

    @abstractmethod
    def resolve(self, collection_id: str) -> str | None:
        """Return the group reference for collection_id, or None if unknown."""
        pass

    @abstractmethod
    def collection_ids(self) -> list[str]:
        """Return all known collection ids, sorted."""
        pass


class StaticCollectionResolver(CollectionResolver):
    """Resolver over a fixed mapping; lookups ignore case."""

    def __init__(self, mapping: Mapping[str, str]) -> None:
        self._mapping = {
            str(code).strip().upper(): str(group_ref)
            for code, group_ref in mapping.items()
        }

    @classmethod
    def from_json_file(cls, path: str | Path) -> StaticCollectionResolver:
        """Load a {"CODE": "group_ref", ...} mapping from a JSON file."""
        with open(path, encoding="utf-8") as fh:
            mapping = json.load(fh)
        if not isinstance(mapping, dict):
            raise ValueError(f"Series mapping in {path} must be a JSON object")
        return cls(mapping)

    def resolve(self, collection_id: str) -> str | None:
        return self._mapping.get(collection_id.strip().upper())

    def collection_ids(self) -> list[str]:
        return sorted(self._mapping)
