"""
Unit Tests for DeliveryCoordinator

Tests per-recipient mutual exclusion, cache-or-fetch resolution, ordered
delivery, per-item failure handling and lock release on every exit path.
"""

import asyncio
import dataclasses
import threading
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from mcp_server_series import messages
from mcp_server_series.delivery_coordinator import (
    DeliveryCoordinator,
    DeliveryOutcome,
)
from mcp_server_series.exceptions import (
    CollectionNotFoundError,
    ProviderError,
    RecipientBusyError,
    StorageError,
)


class TestRecipientLocking:
    """Test suite for the per-recipient busy marker."""

    def test_recipient_lock_blocks_second_acquire(self, coordinator):
        """Test that a held lock rejects a second holder for the same recipient."""
        with coordinator.recipient_lock("u1", "AB001") as lock:
            assert lock.active_collection_id == "AB001"
            assert coordinator.is_busy("u1")
            assert coordinator.active_collection("u1") == "AB001"

            with pytest.raises(RecipientBusyError) as exc_info:
                with coordinator.recipient_lock("u1", "AB002"):
                    pass
            assert exc_info.value.active_collection_id == "AB001"

            # Other recipients are independent
            with coordinator.recipient_lock("u2", "AB002"):
                assert coordinator.active_recipients() == {"u1": "AB001", "u2": "AB002"}

        assert not coordinator.is_busy("u1")
        assert coordinator.active_recipients() == {}

    def test_recipient_lock_released_on_error(self, coordinator):
        """Test that the marker is cleared when the block raises."""
        with pytest.raises(RuntimeError):
            with coordinator.recipient_lock("u1", "AB001"):
                raise RuntimeError("boom")

        assert not coordinator.is_busy("u1")

    @pytest.mark.asyncio
    async def test_busy_recipient_gets_please_wait(self, coordinator, provider, transport):
        """Test that a request for a busy recipient is rejected, not queued."""
        with coordinator.recipient_lock("u1", "AB001"):
            result = await coordinator.deliver_collection("u1", "AB002")

        assert result.outcome is DeliveryOutcome.BUSY
        assert transport.texts_for("u1") == [messages.PLEASE_WAIT]
        assert provider.list_calls == []
        assert transport.deliveries == []

    @pytest.mark.asyncio
    async def test_concurrent_requests_same_recipient(self, coordinator, provider, transport):
        """Test that only one of two overlapping requests is processed."""
        provider.release = asyncio.Event()

        first = asyncio.create_task(coordinator.deliver_collection("u1", "AB001"))
        await provider.list_started.wait()
        assert coordinator.active_collection("u1") == "AB001"

        second = await coordinator.deliver_collection("u1", "AB002")
        assert second.outcome is DeliveryOutcome.BUSY

        provider.release.set()
        result = await first

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert provider.list_calls == ["group_ab001"]
        assert transport.payloads_for("u1") == [b"episode-1", b"episode-2", b"episode-3"]
        assert messages.PLEASE_WAIT in transport.texts_for("u1")
        assert not coordinator.is_busy("u1")

    @pytest.mark.asyncio
    async def test_different_recipients_run_concurrently(
        self, coordinator, provider, transport
    ):
        """Test that one recipient's delivery does not block another's."""
        provider.release = asyncio.Event()

        task_u1 = asyncio.create_task(coordinator.deliver_collection("u1", "AB001"))
        task_u2 = asyncio.create_task(coordinator.deliver_collection("u2", "AB002"))
        while len(provider.list_calls) < 2:
            await asyncio.sleep(0)

        assert coordinator.active_recipients() == {"u1": "AB001", "u2": "AB002"}

        provider.release.set()
        r1, r2 = await asyncio.gather(task_u1, task_u2)

        assert r1.outcome is DeliveryOutcome.COMPLETED
        assert r2.outcome is DeliveryOutcome.COMPLETED
        assert transport.payloads_for("u2") == [b"other-1"]
        assert messages.PLEASE_WAIT not in transport.texts_for("u2")

    @pytest.mark.asyncio
    async def test_cancellation_releases_lock(self, coordinator, provider):
        """Test that a cancelled delivery does not leave the recipient busy."""
        provider.release = asyncio.Event()

        task = asyncio.create_task(coordinator.deliver_collection("u1", "AB001"))
        await provider.list_started.wait()
        assert coordinator.is_busy("u1")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not coordinator.is_busy("u1")

    @pytest.mark.asyncio
    async def test_invalid_recipient_rejected(self, coordinator):
        """Test that an empty recipient key is a caller error."""
        with pytest.raises(ValueError):
            await coordinator.deliver_collection("  ", "AB001")


class TestDeliveryFlow:
    """Test suite for resolution, listing and ordered delivery."""

    @pytest.mark.asyncio
    async def test_delivers_items_in_order_with_captions(self, coordinator, transport):
        """Test the full miss path: fetch, cache and deliver in provider order."""
        result = await coordinator.deliver_collection("u1", "ab001")

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert result.collection_id == "AB001"
        assert result.total_items == 3
        assert result.delivered == 3
        assert result.cache_hits == 0
        assert result.fully_cached is False
        assert [caption for _, _, caption in transport.deliveries] == [
            "📹 Video 1/3\n\nPilot",
            "📹 Video 2/3",
            "📹 Video 3/3\n\nFinale",
        ]
        assert transport.payloads_for("u1") == [b"episode-1", b"episode-2", b"episode-3"]

        texts = transport.texts_for("u1")
        assert texts[0] == messages.found("AB001")
        assert texts[1] == messages.listing_ready(3, False)
        assert texts[-1] == messages.ALL_DELIVERED

    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(
        self, coordinator, cache, provider, transport
    ):
        """Test that fetched items are cached and reused."""
        await coordinator.deliver_collection("u1", "AB001")
        assert provider.fetch_calls == ["101", "102", "103"]
        assert cache.has_collection("AB001", ["101", "102", "103"])

        result = await coordinator.deliver_collection("u2", "AB001")

        assert provider.fetch_calls == ["101", "102", "103"]
        assert result.cache_hits == 3
        assert result.fully_cached is True
        assert messages.listing_ready(3, True) in transport.texts_for("u2")
        assert "Cached ⚡" in messages.listing_ready(3, True)
        assert transport.payloads_for("u2") == [b"episode-1", b"episode-2", b"episode-3"]

    @pytest.mark.asyncio
    async def test_unknown_collection_not_found(self, coordinator, provider, transport):
        """Test that an unknown code never reaches the provider."""
        result = await coordinator.deliver_collection("u1", "ZZ999")

        assert result.outcome is DeliveryOutcome.NOT_FOUND
        assert provider.list_calls == []
        assert transport.texts_for("u1") == [messages.not_found("ZZ999")]
        assert not coordinator.is_busy("u1")

    def test_resolve_raises_not_found(self, coordinator):
        """Test the resolver lookup used before any provider call."""
        assert coordinator._resolve(" ab002 ") == ("AB002", "group_ab002")
        with pytest.raises(CollectionNotFoundError) as exc_info:
            coordinator._resolve("zz999")
        assert exc_info.value.collection_id == "ZZ999"

    @pytest.mark.asyncio
    async def test_invalid_collection_id_not_found(self, coordinator, provider):
        """Test that a malformed code is reported as not found."""
        result = await coordinator.deliver_collection("u1", "../etc")

        assert result.outcome is DeliveryOutcome.NOT_FOUND
        assert provider.list_calls == []

    @pytest.mark.asyncio
    async def test_empty_collection(self, coordinator, transport):
        """Test the empty-listing outcome."""
        result = await coordinator.deliver_collection("u1", "AB003")

        assert result.outcome is DeliveryOutcome.EMPTY
        assert transport.deliveries == []
        assert transport.texts_for("u1")[-1] == messages.EMPTY_COLLECTION

    @pytest.mark.asyncio
    async def test_listing_failure(self, coordinator, provider, transport):
        """Test that a provider listing error fails the request and frees the recipient."""
        provider.list_error = ProviderError("upstream down")

        result = await coordinator.deliver_collection("u1", "AB001")

        assert result.outcome is DeliveryOutcome.FAILED
        assert result.error == "upstream down"
        assert transport.texts_for("u1")[-1] == messages.GENERIC_FAILURE
        assert not coordinator.is_busy("u1")

    @pytest.mark.asyncio
    async def test_listing_timeout(
        self, cache, provider, transport, resolver, coordinator_config
    ):
        """Test that a hanging listing is bounded by the list timeout."""
        provider.release = asyncio.Event()
        config = dataclasses.replace(coordinator_config, list_timeout_seconds=0.05)
        coordinator = DeliveryCoordinator(cache, provider, transport, resolver, config)

        result = await coordinator.deliver_collection("u1", "AB001")

        assert result.outcome is DeliveryOutcome.FAILED
        assert result.error == "TimeoutError"
        assert not coordinator.is_busy("u1")


class TestPerItemFailures:
    """Test suite for item-level error handling."""

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_item(self, coordinator, cache, provider, transport):
        """Test that one failed download does not abort the series."""
        provider.fail_fetch = {"102"}

        result = await coordinator.deliver_collection("u1", "AB001")

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert result.delivered == 2
        assert result.skipped == ["102"]
        assert transport.payloads_for("u1") == [b"episode-1", b"episode-3"]
        assert messages.item_skipped(2) in transport.texts_for("u1")
        assert transport.texts_for("u1")[-1] == messages.partial_delivery(2, 3)
        assert not cache.has_item("AB001", "102")

    @pytest.mark.asyncio
    async def test_rejected_and_failed_delivery_skip(self, coordinator, transport):
        """Test that a False return and a DeliveryError both skip the item."""
        transport.reject = {b"episode-1"}
        transport.raise_on = {b"episode-3"}

        result = await coordinator.deliver_collection("u1", "AB001")

        assert result.delivered == 1
        assert result.skipped == ["101", "103"]
        assert transport.payloads_for("u1") == [b"episode-2"]

    @pytest.mark.asyncio
    async def test_fetch_timeout_skips_item(
        self, cache, provider, transport, resolver, coordinator_config
    ):
        """Test that a slow download is bounded by the fetch timeout."""
        provider.fetch_delay = 1.0
        config = dataclasses.replace(coordinator_config, fetch_timeout_seconds=0.05)
        coordinator = DeliveryCoordinator(cache, provider, transport, resolver, config)

        result = await coordinator.deliver_collection("u1", "AB002")

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert result.skipped == ["201"]
        assert transport.deliveries == []

    @pytest.mark.asyncio
    async def test_cache_write_failure_still_delivers(self, coordinator, cache, transport):
        """Test that a full cache does not stop delivery of the fetched copy."""
        with patch.object(cache, "put_item", side_effect=StorageError("disk full")):
            result = await coordinator.deliver_collection("u1", "AB001")

        assert result.delivered == 3
        assert result.skipped == []
        assert transport.payloads_for("u1") == [b"episode-1", b"episode-2", b"episode-3"]
        assert cache.get_collection("AB001") is None

    @pytest.mark.asyncio
    async def test_status_message_failure_is_not_fatal(self, coordinator, transport):
        """Test that text notifications are best-effort."""
        transport.send_text = AsyncMock(side_effect=RuntimeError("chat offline"))

        result = await coordinator.deliver_collection("u1", "AB001")

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert result.delivered == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates_and_releases(
        self, coordinator, transport, coordinator_config
    ):
        """Test that an unexpected exception surfaces after cleanup."""
        transport.unexpected_on = {b"episode-2"}

        with pytest.raises(RuntimeError, match="transport crashed"):
            await coordinator.deliver_collection("u1", "AB001")

        assert not coordinator.is_busy("u1")
        assert transport.texts_for("u1")[-1] == messages.GENERIC_FAILURE
        assert transport.payloads_for("u1") == [b"episode-1"]

        # The recipient can immediately try again
        transport.unexpected_on = set()
        result = await coordinator.deliver_collection("u1", "AB001")
        assert result.outcome is DeliveryOutcome.COMPLETED


class TestTransientFiles:
    """Test suite for cleanup of fetched-but-not-cached copies."""

    @pytest.mark.asyncio
    async def test_transient_directory_left_empty(
        self, coordinator, coordinator_config, provider
    ):
        """Test that fetched copies are removed after every delivery."""
        provider.fail_fetch = {"103"}
        await coordinator.deliver_collection("u1", "AB001")

        assert list(Path(coordinator_config.transient_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_transient_directory_cleaned_after_crash(
        self, coordinator, coordinator_config, transport
    ):
        """Test that an aborted delivery leaves no transient files."""
        transport.unexpected_on = {b"episode-1"}
        with pytest.raises(RuntimeError):
            await coordinator.deliver_collection("u1", "AB001")

        assert list(Path(coordinator_config.transient_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_cache_miss_delivers_transient_copy(
        self, cache, provider, transport, resolver, coordinator_config
    ):
        """Test that eviction of a just-cached item cannot break its delivery."""
        coordinator = DeliveryCoordinator(
            cache, provider, transport, resolver, coordinator_config
        )
        delivered_paths = []
        original = transport.deliver

        async def recording_deliver(recipient_key, artifact_path, caption):
            delivered_paths.append(artifact_path)
            return await original(recipient_key, artifact_path, caption)

        transport.deliver = recording_deliver
        await coordinator.deliver_collection("u1", "AB002")

        assert len(delivered_paths) == 1
        assert cache.root not in delivered_paths[0].parents

    @pytest.mark.asyncio
    async def test_cached_file_removed_mid_send_is_fetched_again(
        self, coordinator, cache, provider, transport
    ):
        """Test that a hit whose file disappears during delivery falls back to the provider."""
        await coordinator.deliver_collection("u1", "AB002")
        original = transport.deliver

        async def removing_deliver(recipient_key, artifact_path, caption):
            if cache.root in Path(artifact_path).parents:
                cache.remove_collection("AB002")
            return await original(recipient_key, artifact_path, caption)

        transport.deliver = removing_deliver
        result = await coordinator.deliver_collection("u2", "AB002")

        assert result.delivered == 1
        assert result.skipped == []
        assert result.cache_hits == 0
        assert provider.fetch_calls == ["201", "201"]
        assert transport.payloads_for("u2") == [b"other-1"]
        assert messages.ALL_DELIVERED in transport.texts_for("u2")

    @pytest.mark.asyncio
    async def test_cached_file_rejected_is_not_fetched_again(
        self, coordinator, provider, transport
    ):
        """Test that a transport failure on an intact cached file still skips the item."""
        await coordinator.deliver_collection("u1", "AB002")
        transport.raise_on = {b"other-1"}

        result = await coordinator.deliver_collection("u2", "AB002")

        assert result.skipped == ["201"]
        assert provider.fetch_calls == ["201"]


class TestEventLoopOffload:
    """Test suite for keeping blocking cache I/O off the event loop."""

    @pytest.mark.asyncio
    async def test_has_collection_runs_in_worker_thread(self, coordinator, cache):
        threads = []
        original = cache.has_collection

        def recording_has_collection(*args, **kwargs):
            threads.append(threading.current_thread())
            return original(*args, **kwargs)

        with patch.object(cache, "has_collection", side_effect=recording_has_collection):
            result = await coordinator.deliver_collection("u1", "AB001")

        assert result.outcome is DeliveryOutcome.COMPLETED
        assert threads
        assert all(thread is not threading.main_thread() for thread in threads)
