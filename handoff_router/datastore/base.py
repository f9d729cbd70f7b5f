"""
Routing Data Store Contract
===========================

Abstract base class for routing data persistence.

The routing engine owns the routing state and writes every change
through a store before applying it in memory. A store shared by several
engine instances must also provide the single-writer guarantee through
`write_guard`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from handoff_router.models.participant import Participant
from handoff_router.models.routing_state import (
    Connection,
    PendingRequest,
    RoutingChanges,
    RoutingState,
)


class RoutingDataStore(ABC):
    """
    Persistence contract for routing state.

    The engine writes through `commit`, one call per operation. The
    single-item methods are the building blocks of the default `commit`.
    Implementations raise on infrastructure failure; the engine does not
    retry.
    """

    #: True when several engine instances share the data.
    is_shared: bool = False

    async def initialize(self) -> None:
        """Validate connectivity. Called once before the first load."""

    async def close(self) -> None:
        """Release connections and resources."""

    @asynccontextmanager
    async def write_guard(self) -> AsyncIterator[None]:
        """
        Exclusive section across engine instances.

        Process-local stores rely on the engine's own lock and yield
        immediately.
        """
        yield

    async def commit(self, changes: RoutingChanges) -> None:
        """
        Write the changes of one operation.

        The default applies them one by one, which is atomic only for
        stores whose single-item writes cannot fail. Durable stores
        override this with a transaction so a failure leaves nothing
        half-written.
        """
        for name, args in changes:
            await getattr(self, name)(*args)

    @abstractmethod
    async def load_state(self) -> RoutingState:
        """Return a fresh RoutingState with everything stored."""

    @abstractmethod
    async def add_participant(self, participant: Participant, is_bot: bool = False) -> None:
        pass

    @abstractmethod
    async def remove_participant(self, participant: Participant, is_bot: bool = False) -> None:
        pass

    @abstractmethod
    async def add_aggregation_endpoint(self, endpoint: Participant) -> None:
        pass

    @abstractmethod
    async def remove_aggregation_endpoint(self, endpoint: Participant) -> None:
        pass

    @abstractmethod
    async def add_pending_request(self, request: PendingRequest) -> None:
        pass

    @abstractmethod
    async def remove_pending_request(self, request: PendingRequest) -> None:
        pass

    @abstractmethod
    async def add_connection(self, connection: Connection) -> None:
        pass

    @abstractmethod
    async def remove_connection(self, connection: Connection) -> None:
        pass

    @abstractmethod
    async def delete_all(self) -> None:
        """Delete all routing data permanently."""
