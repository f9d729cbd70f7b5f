"""
In-Memory Routing Data Store
============================

Process-local store. Data is lost on restart and is not shared between
instances, so use it for development, tests and single-instance bots.
"""

from __future__ import annotations

from handoff_router.datastore.base import RoutingDataStore
from handoff_router.models.participant import Participant
from handoff_router.models.routing_state import Connection, PendingRequest, RoutingState
from utils.ml_logging import get_logger

logger = get_logger("handoff_router.datastore.memory")


class InMemoryRoutingDataStore(RoutingDataStore):
    """Keeps a private RoutingState; `load_state` hands out copies."""

    is_shared = False

    def __init__(self):
        self._state = RoutingState()

    async def load_state(self) -> RoutingState:
        return self._state.copy()

    async def add_participant(self, participant: Participant, is_bot: bool = False) -> None:
        self._state.add_participant(participant, is_bot)

    async def remove_participant(self, participant: Participant, is_bot: bool = False) -> None:
        self._state.remove_participant(participant, is_bot)

    async def add_aggregation_endpoint(self, endpoint: Participant) -> None:
        self._state.add_aggregation_endpoint(endpoint)

    async def remove_aggregation_endpoint(self, endpoint: Participant) -> None:
        self._state.remove_aggregation_endpoint(endpoint)

    async def add_pending_request(self, request: PendingRequest) -> None:
        self._state.remove_pending_request(request)
        self._state.add_pending_request(request)

    async def remove_pending_request(self, request: PendingRequest) -> None:
        self._state.remove_pending_request(request)

    async def add_connection(self, connection: Connection) -> None:
        self._state.remove_connection(connection)
        self._state.add_connection(connection)

    async def remove_connection(self, connection: Connection) -> None:
        self._state.remove_connection(connection)

    async def delete_all(self) -> None:
        self._state.clear()
        logger.info("In-memory routing data deleted")
