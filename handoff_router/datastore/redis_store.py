"""
Redis Routing Data Store
========================

Durable routing data in Redis (e.g. Azure Cache for Redis).

Layout (one hash per collection, JSON values):
    {prefix}:users         participant key            -> participant
    {prefix}:bots          participant key            -> participant
    {prefix}:aggregation   endpoint key               -> participant
    {prefix}:pending       requester key              -> pending request
    {prefix}:connections   operator key|client key    -> connection

The braces are a cluster hash tag: every key lands in the same slot, so
the writes of one routing operation commit in a single MULTI/EXEC.

When `shared` is set, several engine instances may use the same data and
`write_guard` holds a Redis lock ({prefix}:lock) for the duration of each
mutating operation.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from redis.exceptions import LockError

from handoff_router.datastore.base import RoutingDataStore
from handoff_router.models.participant import Participant
from handoff_router.models.routing_state import (
    Connection,
    PendingRequest,
    RoutingChanges,
    RoutingState,
)
from handoff_router.redis.manager import RedisManager
from utils.ml_logging import get_logger

logger = get_logger("handoff_router.datastore.redis")


class RoutingStoreLockError(RuntimeError):
    """Raised when the shared write lock cannot be acquired in time."""


class RedisRoutingDataStore(RoutingDataStore):
    """Routing data persisted in Redis hashes."""

    def __init__(
        self,
        manager: RedisManager,
        key_prefix: str = "handoff",
        shared: bool = False,
        lock_timeout: float = 10.0,
    ):
        self._manager = manager
        self._prefix = key_prefix
        self.is_shared = shared
        self._lock_timeout = lock_timeout

    def _key(self, name: str) -> str:
        return f"{{{self._prefix}}}:{name}"

    def _participants_key(self, is_bot: bool) -> str:
        return self._key("bots" if is_bot else "users")

    @staticmethod
    def _connection_field(connection: Connection) -> str:
        return f"{connection.operator.key}|{connection.client.key}"

    def _command(self, name: str, args: tuple[Any, ...]) -> tuple[str, tuple[Any, ...]]:
        """Translate one routing change into a Redis write command."""
        if name in ("add_participant", "remove_participant"):
            participant, is_bot = args
            key = self._participants_key(is_bot)
            if name == "add_participant":
                return "hset", (key, participant.key, json.dumps(participant.to_dict()))
            return "hdel", (key, participant.key)

        if name == "add_aggregation_endpoint":
            (endpoint,) = args
            return "hset", (self._key("aggregation"), endpoint.key, json.dumps(endpoint.to_dict()))
        if name == "remove_aggregation_endpoint":
            (endpoint,) = args
            return "hdel", (self._key("aggregation"), endpoint.key)

        if name == "add_pending_request":
            (request,) = args
            return "hset", (
                self._key("pending"),
                request.requester.key,
                json.dumps(request.to_dict()),
            )
        if name == "remove_pending_request":
            (request,) = args
            return "hdel", (self._key("pending"), request.requester.key)

        if name == "add_connection":
            (connection,) = args
            return "hset", (
                self._key("connections"),
                self._connection_field(connection),
                json.dumps(connection.to_dict()),
            )
        if name == "remove_connection":
            (connection,) = args
            return "hdel", (self._key("connections"), self._connection_field(connection))

        raise ValueError(f"Unsupported routing change: {name}")

    async def initialize(self) -> None:
        if not await self._manager.ping_async():
            raise ConnectionError("Redis health check failed")
        logger.info("Redis routing data store ready (prefix=%s, shared=%s)", self._prefix, self.is_shared)

    async def close(self) -> None:
        self._manager.close()

    @asynccontextmanager
    async def write_guard(self) -> AsyncIterator[None]:
        if not self.is_shared:
            yield
            return

        lock = self._manager.lock(
            self._key("lock"), timeout=self._lock_timeout, blocking_timeout=self._lock_timeout
        )
        loop = asyncio.get_running_loop()
        acquired = await loop.run_in_executor(None, lock.acquire)
        if not acquired:
            raise RoutingStoreLockError(
                f"Could not acquire routing lock within {self._lock_timeout} seconds"
            )
        try:
            yield
        finally:
            try:
                await loop.run_in_executor(None, lock.release)
            except LockError as e:
                # The lock expired while held; the next writer may already be in
                logger.error("Routing lock released after expiry: %s", e)

    async def commit(self, changes: RoutingChanges) -> None:
        """Write all changes in one MULTI/EXEC; on failure nothing is applied."""
        commands = [self._command(name, args) for name, args in changes]
        await self._manager.execute_transaction_async(commands)

    async def load_state(self) -> RoutingState:
        users = await self._manager.hash_get_all_async(self._participants_key(False))
        bots = await self._manager.hash_get_all_async(self._participants_key(True))
        aggregation = await self._manager.hash_get_all_async(self._key("aggregation"))
        pending = await self._manager.hash_get_all_async(self._key("pending"))
        connections = await self._manager.hash_get_all_async(self._key("connections"))

        state = RoutingState(
            bot_participants=[Participant.from_dict(json.loads(v)) for v in bots.values()],
            user_participants=[Participant.from_dict(json.loads(v)) for v in users.values()],
            aggregation_endpoints=[
                Participant.from_dict(json.loads(v)) for v in aggregation.values()
            ],
            pending_requests=[PendingRequest.from_dict(json.loads(v)) for v in pending.values()],
            connections=[Connection.from_dict(json.loads(v)) for v in connections.values()],
        )
        # Hashes are unordered; the queue order is the enqueue time
        state.pending_requests.sort(key=lambda r: r.enqueued_at)
        state.connections.sort(key=lambda c: c.connected_at)
        return state

    async def add_participant(self, participant: Participant, is_bot: bool = False) -> None:
        await self.commit(RoutingChanges().add_participant(participant, is_bot))

    async def remove_participant(self, participant: Participant, is_bot: bool = False) -> None:
        await self.commit(RoutingChanges().remove_participant(participant, is_bot))

    async def add_aggregation_endpoint(self, endpoint: Participant) -> None:
        await self.commit(RoutingChanges().add_aggregation_endpoint(endpoint))

    async def remove_aggregation_endpoint(self, endpoint: Participant) -> None:
        await self.commit(RoutingChanges().remove_aggregation_endpoint(endpoint))

    async def add_pending_request(self, request: PendingRequest) -> None:
        await self.commit(RoutingChanges().add_pending_request(request))

    async def remove_pending_request(self, request: PendingRequest) -> None:
        await self.commit(RoutingChanges().remove_pending_request(request))

    async def add_connection(self, connection: Connection) -> None:
        await self.commit(RoutingChanges().add_connection(connection))

    async def remove_connection(self, connection: Connection) -> None:
        await self.commit(RoutingChanges().remove_connection(connection))

    async def delete_all(self) -> None:
        keys = (
            self._participants_key(False),
            self._participants_key(True),
            self._key("aggregation"),
            self._key("pending"),
            self._key("connections"),
        )
        await self._manager.execute_transaction_async([("delete", (key,)) for key in keys])
        logger.info("Redis routing data deleted (prefix=%s)", self._prefix)
