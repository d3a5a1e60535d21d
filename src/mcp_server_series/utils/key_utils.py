from __future__ import annotations


def _validate_path_component(value: str | None, label: str) -> str:
    if value is None:
        raise ValueError(f"{label} is required")
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a non-empty string")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{label} must be a non-empty string")
    if "/" in cleaned or "\\" in cleaned or "\x00" in cleaned:
        raise ValueError(f"{label} must not contain path separators: {value!r}")
    # Leading dots are reserved for temp, trash and index entries in the cache root
    if cleaned.startswith("."):
        raise ValueError(f"{label} must not start with '.': {value!r}")
    return cleaned


def normalize_collection_id(collection_id: str | None) -> str:
    """Validate a collection id and return its case-normalized (upper) form."""
    return _validate_path_component(collection_id, "collection_id").upper()


def validate_item_id(item_id: str | None) -> str:
    """Validate an item id and return the stripped value."""
    return _validate_path_component(item_id, "item_id")


def validate_recipient_key(recipient_key: str | None) -> str:
    """Validate that recipient_key is a non-empty string and return the stripped value."""
    if recipient_key is None:
        raise ValueError("recipient_key is required")
    if not isinstance(recipient_key, str) or not recipient_key.strip():
        raise ValueError("recipient_key must be a non-empty string")
    return recipient_key.strip()
