"""
Local Filesystem Adapters

Provider and transport implementations that work against plain directories,
used by the server when no chat-protocol clients are wired in:

- DirectoryContentProvider: each provider group is a sub-directory of a
  library root; its files are the items, oldest (mtime) first.
- OutboxTransport: delivered artifacts are copied into a per-recipient
  outbox directory and text messages are appended to a log file there.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path

from .collaborators import ContentProvider, DeliveryTransport, ProviderItem
from .exceptions import DeliveryError, ProviderError
from .utils.key_utils import validate_recipient_key

logger = logging.getLogger(__name__)

CAPTION_SUFFIX = ".txt"


class DirectoryContentProvider(ContentProvider):
    """ContentProvider reading groups from sub-directories of library_dir."""

    def __init__(self, library_dir: str | Path) -> None:
        self._library_dir = Path(library_dir)

    def _group_dir(self, group_ref: str) -> Path:
        group_dir = (self._library_dir / group_ref).resolve()
        if self._library_dir.resolve() not in group_dir.parents:
            raise ProviderError(f"Invalid group reference: {group_ref!r}")
        return group_dir

    def _list_sync(self, group_ref: str) -> list[ProviderItem]:
        group_dir = self._group_dir(group_ref)
        if not group_dir.is_dir():
            raise ProviderError(f"Group not found in library: {group_ref}")

        artifacts = [
            path
            for path in group_dir.iterdir()
            if path.is_file()
            and not path.name.startswith(".")
            and path.suffix != CAPTION_SUFFIX
        ]
        artifacts.sort(key=lambda path: (path.stat().st_mtime, path.name))

        items = []
        for path in artifacts:
            caption_file = path.with_suffix(CAPTION_SUFFIX)
            caption = (
                caption_file.read_text(encoding="utf-8").strip()
                if caption_file.is_file()
                else ""
            )
            items.append(ProviderItem(item_id=path.stem, caption=caption, ref=path))
        logger.info(f"Found {len(items)} item(s) in group {group_ref}")
        return items

    async def list_items(self, group_ref: str) -> list[ProviderItem]:
        try:
            return await asyncio.to_thread(self._list_sync, group_ref)
        except OSError as e:
            raise ProviderError(f"Failed to list group {group_ref}: {e}") from e

    async def fetch_item(self, item: ProviderItem, dest_dir: Path) -> Path:
        source = Path(item.ref) if item.ref is not None else None
        if source is None or not source.is_file():
            raise ProviderError(f"Item {item.item_id} is no longer available")
        target = Path(dest_dir) / f"item_{item.item_id}_{int(time.time() * 1000)}{source.suffix}"
        try:
            await asyncio.to_thread(shutil.copyfile, source, target)
        except OSError as e:
            raise ProviderError(f"Failed to fetch item {item.item_id}: {e}") from e
        return target


class OutboxTransport(DeliveryTransport):
    """DeliveryTransport writing into <outbox_dir>/<recipient>/."""

    def __init__(self, outbox_dir: str | Path) -> None:
        self._outbox_dir = Path(outbox_dir)
        self._sequence = 0

    def _recipient_dir(self, recipient_key: str) -> Path:
        key = validate_recipient_key(recipient_key)
        safe = "".join(ch if ch.isalnum() or ch in "-_@." else "_" for ch in key)
        recipient_dir = self._outbox_dir / safe.lstrip(".")
        recipient_dir.mkdir(parents=True, exist_ok=True)
        return recipient_dir

    def _write_delivery(
        self, recipient_key: str, artifact_path: Path, caption: str, sequence: int
    ) -> Path:
        recipient_dir = self._recipient_dir(recipient_key)
        target = recipient_dir / f"{sequence:06d}_{Path(artifact_path).name}"
        shutil.copyfile(artifact_path, target)
        if caption:
            target.with_name(target.name + CAPTION_SUFFIX).write_text(
                caption, encoding="utf-8"
            )
        return target

    def _append_text(self, recipient_key: str, text: str) -> None:
        log_file = self._recipient_dir(recipient_key) / "messages.log"
        with open(log_file, "a", encoding="utf-8") as fh:
            fh.write(text.rstrip() + "\n\n")

    async def deliver(
        self, recipient_key: str, artifact_path: Path, caption: str
    ) -> bool:
        validate_recipient_key(recipient_key)
        self._sequence += 1
        try:
            await asyncio.to_thread(
                self._write_delivery,
                recipient_key,
                artifact_path,
                caption,
                self._sequence,
            )
        except OSError as e:
            raise DeliveryError(f"Failed to deliver {artifact_path}: {e}") from e
        return True

    async def send_text(self, recipient_key: str, text: str) -> None:
        await asyncio.to_thread(self._append_text, recipient_key, text)
