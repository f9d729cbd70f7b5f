"""
Routing Results
===============

Closed set of outcomes reported by the routing engine.

The engine never notifies anybody itself: every operation returns
RoutingResult values, and a RoutingResultHandler turns them into
user-visible messages. Handlers implement one coroutine per result type,
so adding a type breaks every handler that does not deal with it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from handoff_router.models.participant import Participant
from utils.ml_logging import get_logger

logger = get_logger("handoff_router.results")


class RoutingResultType(str, Enum):
    """Outcome kinds."""

    NO_ACTION_TAKEN = "NoActionTaken"
    OK = "OK"
    CONNECTION_REQUESTED = "ConnectionRequested"
    CONNECTION_ALREADY_REQUESTED = "ConnectionAlreadyRequested"
    CONNECTION_REJECTED = "ConnectionRejected"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    NO_AGGREGATION_CHANNEL = "NoAggregationChannel"
    NO_AGENTS_AVAILABLE = "NoAgentsAvailable"
    FAILED_TO_FORWARD_MESSAGE = "FailedToForwardMessage"
    ERROR = "Error"


_ERROR_TYPES = frozenset(
    {
        RoutingResultType.NO_AGGREGATION_CHANNEL,
        RoutingResultType.NO_AGENTS_AVAILABLE,
        RoutingResultType.FAILED_TO_FORWARD_MESSAGE,
        RoutingResultType.ERROR,
    }
)


@dataclass(frozen=True)
class RoutingResult:
    """
    Outcome of a routing operation.

    Which participants are set depends on the type: connection results name
    both sides, request results name the requester as client.

    Attributes:
        type: Outcome kind
        operator: Operator-side participant, if relevant
        client: Client-side participant (requester), if relevant
        detail: Human readable detail, mostly for errors
        context: Opaque triggering context (e.g. the inbound activity) for in-place replies
        created_at: UTC timestamp of the outcome
    """

    type: RoutingResultType
    operator: Participant | None = None
    client: Participant | None = None
    detail: str | None = None
    context: Any = field(default=None, compare=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC), compare=False)

    @property
    def is_error(self) -> bool:
        return self.type in _ERROR_TYPES

    def with_context(self, context: Any) -> RoutingResult:
        """Attach the triggering context (e.g. the inbound message)."""
        return replace(self, context=context)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and debug listings."""
        return {
            "type": self.type.value,
            "operator": self.operator.to_dict() if self.operator else None,
            "client": self.client.to_dict() if self.client else None,
            "detail": self.detail,
            "created_at": self.created_at.isoformat(),
        }

    def __str__(self) -> str:
        return f"[{self.type.value}; {self.operator}; {self.client}; {self.detail or ''}]"


class RoutingResultHandler(ABC):
    """
    Consumer of routing results (user-facing notification lives here).

    `handle` dispatches on the result type; subclasses implement every
    kind. NoActionTaken and OK are ignored unless overridden.
    """

    async def handle(self, result: RoutingResult | None) -> None:
        if result is None:
            raise ValueError("The result to handle cannot be None")

        handler = {
            RoutingResultType.NO_ACTION_TAKEN: self.on_no_action_taken,
            RoutingResultType.OK: self.on_ok,
            RoutingResultType.CONNECTION_REQUESTED: self.on_connection_requested,
            RoutingResultType.CONNECTION_ALREADY_REQUESTED: self.on_connection_already_requested,
            RoutingResultType.CONNECTION_REJECTED: self.on_connection_rejected,
            RoutingResultType.CONNECTED: self.on_connected,
            RoutingResultType.DISCONNECTED: self.on_disconnected,
            RoutingResultType.NO_AGGREGATION_CHANNEL: self.on_no_aggregation_channel,
            RoutingResultType.NO_AGENTS_AVAILABLE: self.on_no_agents_available,
            RoutingResultType.FAILED_TO_FORWARD_MESSAGE: self.on_failed_to_forward_message,
            RoutingResultType.ERROR: self.on_error,
        }.get(result.type)

        if handler is None:
            raise ValueError(f"Unhandled routing result type: {result.type}")

        await handler(result)

    async def handle_all(self, results: list[RoutingResult]) -> None:
        for result in results:
            await self.handle(result)

    async def on_no_action_taken(self, result: RoutingResult) -> None:
        pass

    async def on_ok(self, result: RoutingResult) -> None:
        pass

    @abstractmethod
    async def on_connection_requested(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_connection_already_requested(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_connection_rejected(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_connected(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_disconnected(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_no_aggregation_channel(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_no_agents_available(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_failed_to_forward_message(self, result: RoutingResult) -> None: ...

    @abstractmethod
    async def on_error(self, result: RoutingResult) -> None: ...


class LoggingResultHandler(RoutingResultHandler):
    """Logs every result; useful as a default and in diagnostics."""

    async def _log(self, result: RoutingResult) -> None:
        if result.is_error:
            logger.warning("Routing result: %s", result)
        else:
            logger.info("Routing result: %s", result)

    on_connection_requested = _log
    on_connection_already_requested = _log
    on_connection_rejected = _log
    on_connected = _log
    on_disconnected = _log
    on_no_aggregation_channel = _log
    on_no_agents_available = _log
    on_failed_to_forward_message = _log
    on_error = _log
