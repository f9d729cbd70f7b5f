"""
Message Transport
=================

Abstract base class for delivering payloads to participants.

The routing engine only knows a target Participant and an opaque payload;
transports map these onto a concrete channel (WebSocket, chat connector).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from handoff_router.models.participant import Participant
from utils.ml_logging import get_logger

logger = get_logger("handoff_router.transport")


class MessageTransport(ABC):
    """
    Delivers payloads to participants on a channel.

    Implementations report delivery problems by returning False; exceptions
    are tolerated by the engine but logged as errors.
    """

    @abstractmethod
    async def send(self, target: Participant, payload: Any) -> bool:
        """
        Deliver a payload to the target participant.

        Args:
            target: Participant (or conversation-wide endpoint) to deliver to
            payload: Message content, encoding left to the transport

        Returns:
            True if delivered
        """
        pass

    async def create_direct_conversation(
        self, operator: Participant, bot: Participant | None = None
    ) -> str | None:
        """
        Open a dedicated 1:1 conversation between the bot and an operator.

        Returns:
            The new conversation id, or None when the channel cannot do it
        """
        return None


class ChannelTransportRegistry(MessageTransport):
    """Dispatches to the transport registered for the target's channel."""

    def __init__(self, transports: dict[str, MessageTransport] | None = None):
        self._transports: dict[str, MessageTransport] = {}
        for channel_id, transport in (transports or {}).items():
            self.register(channel_id, transport)

    def register(self, channel_id: str, transport: MessageTransport) -> None:
        self._transports[channel_id.lower()] = transport
        logger.info("Registered transport for channel %s: %s", channel_id, type(transport).__name__)

    def unregister(self, channel_id: str) -> None:
        self._transports.pop(channel_id.lower(), None)

    def get(self, channel_id: str) -> MessageTransport | None:
        return self._transports.get(channel_id.lower())

    @property
    def channels(self) -> list[str]:
        return list(self._transports)

    async def send(self, target: Participant, payload: Any) -> bool:
        transport = self.get(target.channel_id)
        if transport is None:
            logger.warning("No transport registered for channel %s", target.channel_id)
            return False
        return await transport.send(target, payload)

    async def create_direct_conversation(
        self, operator: Participant, bot: Participant | None = None
    ) -> str | None:
        transport = self.get(operator.channel_id)
        if transport is None:
            return None
        return await transport.create_direct_conversation(operator, bot)
