"""
Routing State
=============

Pending connection requests, active connections and the aggregate
routing state owned by the routing engine.

RoutingState only offers lookups and plain in-memory mutations; the
engine decides when a mutation is allowed and persists it through the
data store before applying it here.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from handoff_router.models.participant import Participant


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class PendingRequest:
    """A participant waiting to be connected to an operator."""

    requester: Participant
    enqueued_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requester": self.requester.to_dict(),
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingRequest:
        return cls(
            requester=Participant.from_dict(data["requester"]),
            enqueued_at=datetime.fromisoformat(data["enqueued_at"]),
        )


@dataclass(frozen=True)
class Connection:
    """
    An active 1:1 link between an operator and a client.

    The operator side may be addressed in a dedicated conversation opened
    at accept time, distinct from the one it issued the accept from.
    """

    operator: Participant
    client: Participant
    connected_at: datetime = field(default_factory=_utcnow)

    def side_of(self, participant: Participant, exact: bool = True) -> str | None:
        """
        Return "operator" or "client" for the side the participant matches.

        Args:
            participant: Participant to resolve
            exact: Match the conversation-scoped identity only; when False the
                logical identity (channel + account) is tried as well
        """
        if self.operator.is_same_identity(participant):
            return "operator"
        if self.client.is_same_identity(participant):
            return "client"
        if not exact:
            if self.operator.has_matching_account(participant):
                return "operator"
            if self.client.has_matching_account(participant):
                return "client"
        return None

    def counterpart_of(self, participant: Participant, exact: bool = True) -> Participant | None:
        side = self.side_of(participant, exact)
        if side == "operator":
            return self.client
        if side == "client":
            return self.operator
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator.to_dict(),
            "client": self.client.to_dict(),
            "connected_at": self.connected_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Connection:
        return cls(
            operator=Participant.from_dict(data["operator"]),
            client=Participant.from_dict(data["client"]),
            connected_at=datetime.fromisoformat(data["connected_at"]),
        )


@dataclass
class RoutingState:
    """
    Everything the router knows.

    Attributes:
        bot_participants: Identities of the bot, one per channel/conversation
        user_participants: Identities of users and operators seen so far
        aggregation_endpoints: Conversations receiving connection request broadcasts
        pending_requests: FIFO queue of connection requests
        connections: Active operator/client connections
    """

    bot_participants: list[Participant] = field(default_factory=list)
    user_participants: list[Participant] = field(default_factory=list)
    aggregation_endpoints: list[Participant] = field(default_factory=list)
    pending_requests: list[PendingRequest] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def is_tracked(self, participant: Participant, is_bot: bool = False) -> bool:
        participants = self.bot_participants if is_bot else self.user_participants
        return any(p.is_same_identity(participant) for p in participants)

    def find_pending_request(self, participant: Participant) -> PendingRequest | None:
        for request in self.pending_requests:
            if request.requester.is_same_identity(participant):
                return request
        return None

    def find_pending_request_by_account(
        self, account_id: str, channel_id: str | None = None
    ) -> PendingRequest | None:
        """Oldest pending request whose requester has the given account."""
        for request in self.pending_requests:
            requester = request.requester
            if requester.account_id == account_id and (
                channel_id is None or requester.channel_id == channel_id
            ):
                return request
        return None

    def find_connection(self, participant: Participant, exact: bool = False) -> Connection | None:
        """
        Find the connection the participant takes part in.

        An exact (conversation-scoped) match wins; otherwise, unless `exact`
        is set, the logical identity is used so an operator is found even when
        addressed from a different conversation than the connection records.
        """
        for connection in self.connections:
            if connection.side_of(participant, exact=True):
                return connection
        if exact:
            return None
        for connection in self.connections:
            if connection.side_of(participant, exact=False):
                return connection
        return None

    def is_associated_with_aggregation(self, participant: Participant) -> bool:
        endpoint = participant.conversation_endpoint()
        return any(e.is_same_identity(endpoint) for e in self.aggregation_endpoints)

    def find_bot_identity(self, channel_id: str, conversation_id: str) -> Participant | None:
        """Bot identity for a conversation, falling back to any identity on the channel."""
        fallback = None
        for bot in self.bot_participants:
            if bot.channel_id != channel_id:
                continue
            if bot.conversation_id == conversation_id:
                return bot
            fallback = fallback or bot
        return fallback

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_participant(self, participant: Participant, is_bot: bool = False) -> bool:
        if self.is_tracked(participant, is_bot):
            return False
        (self.bot_participants if is_bot else self.user_participants).append(participant)
        return True

    def remove_participant(self, participant: Participant, is_bot: bool = False) -> bool:
        participants = self.bot_participants if is_bot else self.user_participants
        before = len(participants)
        participants[:] = [p for p in participants if not p.is_same_identity(participant)]
        return len(participants) != before

    def add_aggregation_endpoint(self, endpoint: Participant) -> bool:
        if any(e.is_same_identity(endpoint) for e in self.aggregation_endpoints):
            return False
        self.aggregation_endpoints.append(endpoint)
        return True

    def remove_aggregation_endpoint(self, endpoint: Participant) -> bool:
        before = len(self.aggregation_endpoints)
        self.aggregation_endpoints[:] = [
            e for e in self.aggregation_endpoints if not e.is_same_identity(endpoint)
        ]
        return len(self.aggregation_endpoints) != before

    def add_pending_request(self, request: PendingRequest) -> None:
        self.pending_requests.append(request)
        self.pending_requests.sort(key=lambda r: r.enqueued_at)

    def remove_pending_request(self, request: PendingRequest) -> bool:
        before = len(self.pending_requests)
        self.pending_requests[:] = [
            r for r in self.pending_requests if not r.requester.is_same_identity(request.requester)
        ]
        return len(self.pending_requests) != before

    def add_connection(self, connection: Connection) -> None:
        self.connections.append(connection)

    def remove_connection(self, connection: Connection) -> bool:
        before = len(self.connections)
        self.connections[:] = [
            c
            for c in self.connections
            if not (
                c.operator.is_same_identity(connection.operator)
                and c.client.is_same_identity(connection.client)
            )
        ]
        return len(self.connections) != before

    def clear(self) -> None:
        self.bot_participants.clear()
        self.user_participants.clear()
        self.aggregation_endpoints.clear()
        self.pending_requests.clear()
        self.connections.clear()

    def copy(self) -> RoutingState:
        """Shallow copy of every collection; the items themselves are immutable."""
        return RoutingState(
            bot_participants=list(self.bot_participants),
            user_participants=list(self.user_participants),
            aggregation_endpoints=list(self.aggregation_endpoints),
            pending_requests=list(self.pending_requests),
            connections=list(self.connections),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "bot_participants": [p.to_dict() for p in self.bot_participants],
            "user_participants": [p.to_dict() for p in self.user_participants],
            "aggregation_endpoints": [p.to_dict() for p in self.aggregation_endpoints],
            "pending_requests": [r.to_dict() for r in self.pending_requests],
            "connections": [c.to_dict() for c in self.connections],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingState:
        state = cls(
            bot_participants=[Participant.from_dict(p) for p in data.get("bot_participants", [])],
            user_participants=[Participant.from_dict(p) for p in data.get("user_participants", [])],
            aggregation_endpoints=[
                Participant.from_dict(p) for p in data.get("aggregation_endpoints", [])
            ],
            pending_requests=[PendingRequest.from_dict(r) for r in data.get("pending_requests", [])],
            connections=[Connection.from_dict(c) for c in data.get("connections", [])],
        )
        state.pending_requests.sort(key=lambda r: r.enqueued_at)
        return state


class RoutingChanges:
    """
    Ordered writes of one routing operation.

    A store commits them as a unit; the engine then applies the same
    changes to its in-memory RoutingState. Every change names a
    RoutingState mutation and its arguments.

    Example:
        changes = RoutingChanges().add_connection(connection).remove_pending_request(request)
        await store.commit(changes)
        changes.apply_to(state)
    """

    def __init__(self) -> None:
        self._changes: list[tuple[str, tuple[Any, ...]]] = []

    def _append(self, name: str, *args: Any) -> RoutingChanges:
        self._changes.append((name, args))
        return self

    def add_participant(self, participant: Participant, is_bot: bool = False) -> RoutingChanges:
        return self._append("add_participant", participant, is_bot)

    def remove_participant(self, participant: Participant, is_bot: bool = False) -> RoutingChanges:
        return self._append("remove_participant", participant, is_bot)

    def add_aggregation_endpoint(self, endpoint: Participant) -> RoutingChanges:
        return self._append("add_aggregation_endpoint", endpoint)

    def remove_aggregation_endpoint(self, endpoint: Participant) -> RoutingChanges:
        return self._append("remove_aggregation_endpoint", endpoint)

    def add_pending_request(self, request: PendingRequest) -> RoutingChanges:
        return self._append("add_pending_request", request)

    def remove_pending_request(self, request: PendingRequest) -> RoutingChanges:
        return self._append("remove_pending_request", request)

    def add_connection(self, connection: Connection) -> RoutingChanges:
        return self._append("add_connection", connection)

    def remove_connection(self, connection: Connection) -> RoutingChanges:
        return self._append("remove_connection", connection)

    def apply_to(self, state: RoutingState) -> None:
        for name, args in self._changes:
            getattr(state, name)(*args)

    def __iter__(self) -> Iterator[tuple[str, tuple[Any, ...]]]:
        return iter(self._changes)

    def __len__(self) -> int:
        return len(self._changes)
