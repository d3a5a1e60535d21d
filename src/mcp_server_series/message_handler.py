"""
Message Handler

Turns an inbound text message into a command: list the series, show help,
or request a series code through the DeliveryCoordinator. Replies go out
through the same DeliveryTransport the coordinator uses.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from . import messages
from .collaborators import CollectionResolver, DeliveryTransport
from .delivery_coordinator import DeliveryCoordinator, DeliveryResult
from .utils.key_utils import validate_recipient_key

logger = logging.getLogger(__name__)

DEFAULT_SERIES_PATTERN = r"^[A-Za-z]{2}\d{3}$"


class Command(Enum):
    LIST = "list"
    HELP = "help"
    SERIES = "series"
    UNKNOWN = "unknown"


@dataclass
class HandledMessage:
    """What the handler did with one inbound message."""

    command: Command
    reply: str | None = None
    delivery: DeliveryResult | None = None


class MessageHandler:
    """Dispatches inbound text messages for one bot account."""

    def __init__(
        self,
        coordinator: DeliveryCoordinator,
        resolver: CollectionResolver,
        transport: DeliveryTransport,
        series_pattern: str = DEFAULT_SERIES_PATTERN,
    ) -> None:
        self._coordinator = coordinator
        self._resolver = resolver
        self._transport = transport
        self._series_pattern = re.compile(series_pattern)

    def parse(self, text: str) -> Command:
        """Classify a message body."""
        cleaned = (text or "").strip().lower()
        if cleaned in {"list", "/list"}:
            return Command.LIST
        if cleaned in {"help", "/help"}:
            return Command.HELP
        if self._series_pattern.match(cleaned):
            return Command.SERIES
        return Command.UNKNOWN

    async def handle(self, recipient_key: str, text: str) -> HandledMessage:
        """
        Handle one inbound message.

        Args:
            recipient_key: Sender of the message, used as the delivery key
            text: Message body

        Returns:
            HandledMessage describing the reply or delivery
        """
        recipient_key = validate_recipient_key(recipient_key)
        command = self.parse(text)
        logger.info(f"Message from {recipient_key}: {command.value}")

        if command is Command.SERIES:
            delivery = await self._coordinator.deliver_collection(
                recipient_key, text.strip()
            )
            return HandledMessage(command, delivery=delivery)

        if command is Command.LIST:
            reply = messages.series_list(self._resolver.collection_ids())
        elif command is Command.HELP:
            reply = messages.HELP_TEXT
        elif self._coordinator.is_busy(recipient_key):
            # Stay quiet while a delivery is running
            return HandledMessage(command)
        else:
            reply = messages.USAGE_HINT

        await self._transport.send_text(recipient_key, reply)
        return HandledMessage(command, reply=reply)
