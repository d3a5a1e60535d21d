"""
Exception Types

Error taxonomy shared by the series cache, the delivery coordinator and the
collaborator adapters.
"""


class SeriesCacheError(Exception):
    """Base class for all errors raised by this package."""


class StorageError(SeriesCacheError):
    """Artifact copy, write or delete failed (disk full, permissions, I/O)."""


class MetadataCorruptError(SeriesCacheError):
    """The persisted metadata index could not be read or parsed."""


class ProviderError(SeriesCacheError):
    """The external content provider failed to list or fetch items."""


class DeliveryError(SeriesCacheError):
    """The delivery transport failed to deliver an artifact."""


class CollectionNotFoundError(SeriesCacheError):
    """The requested collection id is unknown to the resolver."""

    def __init__(self, collection_id: str) -> None:
        super().__init__(f"Collection '{collection_id}' not found")
        self.collection_id = collection_id


class RecipientBusyError(SeriesCacheError):
    """A recipient already has a delivery in flight.

    Not a system failure: callers should present a "please wait" message.
    """

    def __init__(self, recipient_key: str, active_collection_id: str) -> None:
        super().__init__(
            f"Recipient '{recipient_key}' is busy with '{active_collection_id}'"
        )
        self.recipient_key = recipient_key
        self.active_collection_id = active_collection_id
