"""
JSON File Metadata Store

Persists the metadata index as a single JSON file at the cache root. Every
save writes a sibling temp file, flushes it to disk and renames it over the
previous index, so readers only ever see a complete document.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from .base_metadata_store import MetadataStore
from .collection_metadata import CollectionEntry, decode_index, encode_index
from .exceptions import MetadataCorruptError, StorageError

logger = logging.getLogger(__name__)


class JsonFileMetadataStore(MetadataStore):
    """MetadataStore backed by one JSON file replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, CollectionEntry]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise MetadataCorruptError(
                f"Failed to read metadata index {self._path}: {e}"
            ) from e
        return decode_index(text)

    def save(self, index: dict[str, CollectionEntry]) -> None:
        payload = encode_index(index)
        tmp_path: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
            tmp_path = None
        except OSError as e:
            logger.error(f"Failed to save metadata index {self._path}: {e}")
            raise StorageError(f"Failed to save metadata index: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
