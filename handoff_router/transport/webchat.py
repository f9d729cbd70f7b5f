"""
Web Chat Transport
==================

Delivers routed messages to web chat clients over WebSocket connections.

Protocol:
    - One WebSocket per conversation id
    - Text payloads: {"type": "message", "content": "Hi", "timestamp": ..., "to": ...}
    - Other payloads: {"type": "message", "payload": {...}, "timestamp": ..., "to": ...}
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket

from handoff_router.models.participant import Participant
from handoff_router.transport.base import MessageTransport
from utils.ml_logging import get_logger

logger = get_logger("handoff_router.transport.webchat")


class WebChatConnectionManager:
    """
    Manages active WebSocket connections for web chat.

    Connections are keyed by conversation id, so conversation-wide
    participants (aggregation endpoints) are reachable as well.
    """

    def __init__(self):
        self._connections: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, conversation_id: str) -> None:
        """
        Accept and register a WebSocket for a conversation.

        An existing socket for the same conversation is closed and replaced.
        """
        await websocket.accept()
        async with self._lock:
            previous = self._connections.get(conversation_id)
            self._connections[conversation_id] = websocket
        if previous is not None:
            try:
                await previous.close()
            except RuntimeError as e:
                logger.debug("Replaced WebChat socket already closed: %s", e)
        logger.info("WebChat connected: conversation %s", conversation_id)

    async def disconnect(self, conversation_id: str) -> None:
        async with self._lock:
            self._connections.pop(conversation_id, None)
        logger.info("WebChat disconnected: conversation %s", conversation_id)

    async def send_json(self, conversation_id: str, message: dict[str, Any]) -> bool:
        """
        Send a JSON message to a conversation.

        Returns:
            True if sent, False if not connected or the send failed
        """
        async with self._lock:
            websocket = self._connections.get(conversation_id)

        if websocket is None:
            logger.warning("No WebChat connection for conversation: %s", conversation_id)
            return False

        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.error("Failed to send WebChat message to %s: %s", conversation_id, e)
            await self.disconnect(conversation_id)
            return False

    def is_connected(self, conversation_id: str) -> bool:
        return conversation_id in self._connections

    @property
    def connected_count(self) -> int:
        return len(self._connections)


class WebChatTransport(MessageTransport):
    """
    Message transport for the web chat channel.

    Dedicated conversations are virtual: a new id is minted and the
    operator's client is expected to open a socket for it.
    """

    def __init__(
        self,
        manager: WebChatConnectionManager | None = None,
        supports_direct_conversations: bool = False,
    ):
        self._manager = manager or WebChatConnectionManager()
        self._supports_direct_conversations = supports_direct_conversations

    @property
    def manager(self) -> WebChatConnectionManager:
        return self._manager

    async def send(self, target: Participant, payload: Any) -> bool:
        envelope: dict[str, Any] = {
            "type": "message",
            "timestamp": datetime.now(UTC).isoformat(),
            "to": target.account_id,
        }
        if isinstance(payload, str):
            envelope["content"] = payload
        else:
            envelope["payload"] = payload
        return await self._manager.send_json(target.conversation_id, envelope)

    async def create_direct_conversation(
        self, operator: Participant, bot: Participant | None = None
    ) -> str | None:
        if not self._supports_direct_conversations:
            return None
        conversation_id = f"direct_{uuid.uuid4().hex[:12]}"
        logger.info("Minted direct WebChat conversation %s for %s", conversation_id, operator)
        return conversation_id
