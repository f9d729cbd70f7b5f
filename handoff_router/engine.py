"""
Routing Engine
==============

Tracks participants, aggregation endpoints, pending connection requests
and active 1:1 connections, and reports every outcome as a RoutingResult.

Concurrency:
    Mutating operations run in a write section: the engine's asyncio lock
    plus the store's write guard (a distributed lock for shared stores).
    The changes of an operation are committed to the store as a unit and
    then applied to the in-memory state without suspending, so readers
    that take no lock (route_message, lookups) always see a consistent
    snapshot.
    Broadcasts, relays and conversation creation run outside the write
    section; their failures are reported as results and never roll back
    committed state.

Usage:
    engine = build_routing_engine(transport=WebChatTransport())
    await engine.initialize()

    result = await engine.request_connection(user)
    await handler.handle(result)
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from handoff_router.config.types import RoutingConfig
from handoff_router.datastore import RoutingDataStore, create_data_store
from handoff_router.enums.monitoring import SpanAttr
from handoff_router.models.participant import (
    InvalidParticipantError,
    Participant,
    require_participant,
)
from handoff_router.models.routing_state import (
    Connection,
    PendingRequest,
    RoutingChanges,
    RoutingState,
)
from handoff_router.results import RoutingResult, RoutingResultType
from handoff_router.transport.base import MessageTransport
from utils.ml_logging import get_logger
from utils.routing_context import get_span_attributes, routing_context

logger = get_logger("handoff_router.engine")
tracer = trace.get_tracer(__name__)

#: Pass as the requester to reject_connection_request to reject every pending request.
ALL_REQUESTS = "*"


class RoutingEngine:
    """
    Bot to human hand-off router.

    One instance per process, constructed with its store, transport and
    policy. Invalid participant arguments raise InvalidParticipantError;
    every other outcome is a RoutingResult.
    """

    def __init__(
        self,
        store: RoutingDataStore,
        transport: MessageTransport | None = None,
        config: RoutingConfig | None = None,
    ):
        self._store = store
        self._transport = transport
        self._config = config or RoutingConfig()
        self._state = RoutingState()
        self._lock = asyncio.Lock()
        self._results: deque[RoutingResult] = deque(maxlen=max(self._config.result_history_size, 0))

    @property
    def config(self) -> RoutingConfig:
        return self._config

    @property
    def store(self) -> RoutingDataStore:
        return self._store

    async def initialize(self) -> None:
        """Validate the store and load the persisted state."""
        await self._store.initialize()
        state = await self._store.load_state()
        self._state = state
        logger.info(
            "Routing engine initialized: %d pending, %d connections, %d aggregation endpoints",
            len(state.pending_requests),
            len(state.connections),
            len(state.aggregation_endpoints),
        )

    async def close(self) -> None:
        await self._store.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _write_section(self) -> AsyncIterator[RoutingState]:
        async with self._lock:
            async with self._store.write_guard():
                if self._store.is_shared:
                    self._state = await self._store.load_state()
                yield self._state

    async def _commit(self, state: RoutingState, changes: RoutingChanges) -> None:
        """Persist the changes as a unit, then apply them in memory without suspending."""
        if changes:
            await self._store.commit(changes)
            changes.apply_to(state)

    async def _snapshot(self) -> RoutingState:
        if self._store.is_shared:
            return await self._store.load_state()
        return self._state

    @contextmanager
    def _operation(self, name: str, participant: Participant | None = None, **extra: Any) -> Iterator[Span]:
        with routing_context(participant, operation_name=name, **extra):
            with tracer.start_as_current_span(
                f"routing.{name}", kind=SpanKind.INTERNAL, attributes=get_span_attributes()
            ) as span:
                yield span

    def _record(self, span: Span, result: RoutingResult) -> RoutingResult:
        span.set_attribute(SpanAttr.ROUTING_RESULT_TYPE.value, result.type.value)
        if result.type == RoutingResultType.ERROR:
            span.set_status(Status(StatusCode.ERROR, result.detail or ""))
        self._results.append(result)
        if result.is_error:
            logger.warning("Routing result: %s", result)
        else:
            logger.debug("Routing result: %s", result)
        return result

    async def _deliver(self, target: Participant, payload: Any) -> bool:
        if self._transport is None:
            logger.warning("No message transport configured; cannot deliver to %s", target)
            return False
        try:
            return bool(await self._transport.send(target, payload))
        except Exception as e:
            logger.error("Transport failed to deliver to %s: %s", target, e, exc_info=True)
            return False

    async def _broadcast(self, endpoints: list[Participant], request: PendingRequest) -> int:
        """Send the connection request to every endpoint; returns the failure count."""
        if not endpoints:
            return 0
        payload = {
            "type": "connection_request",
            "requester": request.requester.to_dict(),
            "enqueued_at": request.enqueued_at.isoformat(),
        }
        delivered = await asyncio.gather(*(self._deliver(e, payload) for e in endpoints))
        failures = delivered.count(False)
        if failures:
            logger.warning(
                "Connection request broadcast failed for %d of %d aggregation endpoints",
                failures,
                len(endpoints),
            )
        return failures

    async def _create_direct_conversation(
        self, operator: Participant, bot: Participant | None
    ) -> str | None:
        if self._transport is None:
            return None
        try:
            return await self._transport.create_direct_conversation(operator, bot)
        except Exception as e:
            logger.error("Failed to create a direct conversation with %s: %s", operator, e, exc_info=True)
            return None

    def _is_permitted_operator(self, state: RoutingState, operator: Participant) -> bool:
        return state.is_associated_with_aggregation(operator) or (
            operator.channel_id.lower() in self._config.permitted_operator_channels
        )

    def _check_connect(
        self, state: RoutingState, operator: Participant, requester: Participant
    ) -> RoutingResult | None:
        """Return the failure result for a connect attempt, or None if allowed."""
        if not self._is_permitted_operator(state, operator):
            return RoutingResult(
                RoutingResultType.ERROR,
                operator=operator,
                client=requester,
                detail="The operator is not associated with an aggregation channel",
            )
        if state.find_pending_request(requester) is None:
            return RoutingResult(
                RoutingResultType.ERROR,
                operator=operator,
                client=requester,
                detail=f"No pending request found for {requester}",
            )
        existing = state.find_connection(operator)
        if existing is not None:
            counterpart = existing.counterpart_of(operator, exact=False)
            return RoutingResult(
                RoutingResultType.ERROR,
                operator=operator,
                client=counterpart,
                detail=f"The operator is already connected to {counterpart}",
            )
        existing = state.find_connection(requester)
        if existing is not None:
            counterpart = existing.counterpart_of(requester, exact=False)
            return RoutingResult(
                RoutingResultType.ERROR,
                operator=counterpart,
                client=requester,
                detail=f"The requester is already connected to {counterpart}",
            )
        return None

    # ------------------------------------------------------------------
    # Participants and aggregation endpoints
    # ------------------------------------------------------------------

    async def track_participant(self, participant: Participant, is_bot: bool = False) -> bool:
        """Idempotent upsert by identity; True when a new entry was added."""
        participant = require_participant(participant)
        with self._operation("track_participant", participant, is_bot=is_bot):
            async with self._write_section() as state:
                if state.is_tracked(participant, is_bot):
                    return False
                await self._commit(state, RoutingChanges().add_participant(participant, is_bot))
            logger.debug("Tracking %s %s", "bot" if is_bot else "user", participant)
            return True

    async def track_participants(self, sender: Participant, recipient: Participant) -> bool:
        """
        Track both parties of an inbound message.

        The recipient is the bot's identity in the conversation; the sender
        is tracked as a user unless it is a known bot identity.

        Returns:
            True if anything new was tracked
        """
        sender = require_participant(sender, "sender")
        recipient = require_participant(recipient, "recipient")
        with self._operation("track_participants", sender):
            async with self._write_section() as state:
                changes = RoutingChanges()
                if not state.is_tracked(recipient, is_bot=True):
                    changes.add_participant(recipient, is_bot=True)
                if not state.is_tracked(sender, is_bot=True) and not state.is_tracked(sender):
                    changes.add_participant(sender)
                await self._commit(state, changes)
            return bool(changes)

    async def add_aggregation_endpoint(self, endpoint: Participant) -> bool:
        """
        Register a conversation to receive connection request broadcasts.

        Returns:
            True if registered; False if already registered or the channel
            is not permitted

        Raises:
            InvalidParticipantError: If the endpoint carries an account id
        """
        endpoint = require_participant(endpoint, "endpoint")
        if not endpoint.is_conversation_wide:
            raise InvalidParticipantError("An aggregation endpoint cannot carry an account id")

        permitted = self._config.permitted_aggregation_channels
        if permitted and endpoint.channel_id.lower() not in permitted:
            logger.warning(
                "Refusing aggregation endpoint on channel %s (permitted: %s)",
                endpoint.channel_id,
                ", ".join(permitted),
            )
            return False

        with self._operation("add_aggregation_endpoint", endpoint):
            async with self._write_section() as state:
                if state.is_associated_with_aggregation(endpoint):
                    return False
                await self._commit(state, RoutingChanges().add_aggregation_endpoint(endpoint))
            logger.keyinfo("Aggregation endpoint registered: %s", endpoint)
            return True

    async def remove_aggregation_endpoint(self, endpoint: Participant) -> bool:
        endpoint = require_participant(endpoint, "endpoint")
        with self._operation("remove_aggregation_endpoint", endpoint):
            async with self._write_section() as state:
                matches = [
                    e for e in state.aggregation_endpoints if e.is_same_conversation(endpoint)
                ]
                changes = RoutingChanges()
                for match in matches:
                    changes.remove_aggregation_endpoint(match)
                await self._commit(state, changes)
            if matches:
                logger.keyinfo("Aggregation endpoint removed: %s", endpoint)
            return bool(matches)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def request_connection(
        self, requester: Participant, reject_if_no_aggregation: bool | None = None
    ) -> RoutingResult:
        """
        Queue a request to be connected to a human operator.

        Args:
            requester: Participant asking for a human
            reject_if_no_aggregation: Fail with NoAggregationChannel when no
                endpoint is registered; defaults to the configured policy

        Returns:
            ConnectionRequested, ConnectionAlreadyRequested,
            NoAggregationChannel or Error (already connected)
        """
        requester = require_participant(requester, "requester")
        if reject_if_no_aggregation is None:
            reject_if_no_aggregation = self._config.reject_if_no_aggregation

        with self._operation("request_connection", requester) as span:
            request = None
            async with self._write_section() as state:
                if state.find_pending_request(requester) is not None:
                    result = RoutingResult(
                        RoutingResultType.CONNECTION_ALREADY_REQUESTED, client=requester
                    )
                elif state.find_connection(requester) is not None:
                    result = RoutingResult(
                        RoutingResultType.ERROR,
                        client=requester,
                        detail=f"{requester} is already connected",
                    )
                elif not state.aggregation_endpoints and reject_if_no_aggregation:
                    result = RoutingResult(
                        RoutingResultType.NO_AGGREGATION_CHANNEL,
                        client=requester,
                        detail="No aggregation channel registered",
                    )
                else:
                    request = PendingRequest(requester)
                    await self._commit(state, RoutingChanges().add_pending_request(request))
                    endpoints = list(state.aggregation_endpoints)
                    span.set_attribute(
                        SpanAttr.ROUTING_PENDING_COUNT.value, len(state.pending_requests)
                    )

            if request is None:
                return self._record(span, result)

            logger.keyinfo("Connection requested by %s", requester)
            failures = await self._broadcast(endpoints, request)
            span.set_attribute(SpanAttr.ROUTING_BROADCAST_FAILURES.value, failures)
            detail = None
            if failures:
                detail = f"Broadcast failed for {failures} of {len(endpoints)} aggregation endpoints"
            return self._record(
                span,
                RoutingResult(RoutingResultType.CONNECTION_REQUESTED, client=requester, detail=detail),
            )

    def supports_dedicated_conversation(self, participant: Participant) -> bool:
        """False for channels where the bot cannot open a 1:1 conversation."""
        participant = require_participant(participant)
        return participant.channel_id.lower() not in self._config.no_direct_conversation_channels

    async def connect(
        self,
        operator: Participant,
        requester: Participant,
        create_dedicated_conversation: bool = False,
    ) -> RoutingResult:
        """
        Accept a pending request and connect the operator with the requester.

        Args:
            operator: Participant accepting the request
            requester: Participant holding the pending request
            create_dedicated_conversation: Open a new 1:1 conversation for the
                operator through the transport and connect that instead

        Returns:
            Connected on success, Error otherwise (the pending request is kept)
        """
        operator = require_participant(operator, "operator")
        requester = require_participant(requester, "requester")

        with self._operation("connect", operator, client_account=requester.account_id or "") as span:
            conversation_id = None
            if create_dedicated_conversation:
                # Creating the conversation is network I/O; do it before the write section
                snapshot = await self._snapshot()
                failure = self._check_connect(snapshot, operator, requester)
                if failure is not None:
                    return self._record(span, failure)
                bot = snapshot.find_bot_identity(operator.channel_id, operator.conversation_id)
                conversation_id = await self._create_direct_conversation(operator, bot)
                if conversation_id is None:
                    return self._record(
                        span,
                        RoutingResult(
                            RoutingResultType.ERROR,
                            operator=operator,
                            client=requester,
                            detail="Failed to create a direct conversation",
                        ),
                    )

            async with self._write_section() as state:
                failure = self._check_connect(state, operator, requester)
                if failure is not None:
                    return self._record(span, failure)

                request = state.find_pending_request(requester)
                connected_operator = operator
                if conversation_id is not None:
                    connected_operator = operator.with_conversation(conversation_id)

                connection = Connection(operator=connected_operator, client=request.requester)
                changes = RoutingChanges().add_connection(connection).remove_pending_request(request)
                if conversation_id is not None:
                    if not state.is_tracked(connected_operator):
                        changes.add_participant(connected_operator)
                    bot = state.find_bot_identity(operator.channel_id, operator.conversation_id)
                    if bot is not None:
                        dedicated_bot = bot.with_conversation(conversation_id)
                        if not state.is_tracked(dedicated_bot, is_bot=True):
                            changes.add_participant(dedicated_bot, is_bot=True)
                await self._commit(state, changes)
                span.set_attribute(SpanAttr.ROUTING_CONNECTION_COUNT.value, len(state.connections))

            logger.keyinfo("Connected %s with %s", connected_operator, request.requester)
            return self._record(
                span,
                RoutingResult(
                    RoutingResultType.CONNECTED,
                    operator=connected_operator,
                    client=request.requester,
                ),
            )

    async def reject_connection_request(
        self, requester: Participant | str, rejecter: Participant | None = None
    ) -> list[RoutingResult]:
        """
        Remove pending request(s).

        Args:
            requester: Participant whose request to reject, or ALL_REQUESTS
            rejecter: Operator rejecting the request, if any

        Returns:
            One ConnectionRejected per removed request, or a single Error
            when there was nothing to reject
        """
        reject_all = isinstance(requester, str)
        if reject_all and requester != ALL_REQUESTS:
            raise ValueError(f"Expected a Participant or ALL_REQUESTS, got {requester!r}")
        if not reject_all:
            requester = require_participant(requester, "requester")
        if rejecter is not None:
            rejecter = require_participant(rejecter, "rejecter")

        with self._operation("reject_connection_request", None if reject_all else requester) as span:
            async with self._write_section() as state:
                if reject_all:
                    requests = list(state.pending_requests)
                else:
                    request = state.find_pending_request(requester)
                    requests = [request] if request is not None else []
                changes = RoutingChanges()
                for request in requests:
                    changes.remove_pending_request(request)
                await self._commit(state, changes)

            if not requests:
                detail = (
                    "No pending requests to reject"
                    if reject_all
                    else f"No pending request found for {requester}"
                )
                return [
                    self._record(
                        span,
                        RoutingResult(
                            RoutingResultType.ERROR,
                            operator=rejecter,
                            client=None if reject_all else requester,
                            detail=detail,
                        ),
                    )
                ]

            logger.keyinfo("Rejected %d pending request(s)", len(requests))
            return [
                self._record(
                    span,
                    RoutingResult(
                        RoutingResultType.CONNECTION_REJECTED,
                        operator=rejecter,
                        client=request.requester,
                    ),
                )
                for request in requests
            ]

    async def disconnect(self, participant: Participant) -> RoutingResult:
        """
        End the connection the participant takes part in, on either side.

        The participant is resolved by logical identity, so an operator is
        found even when addressed from another conversation than the one
        recorded at accept time.
        """
        participant = require_participant(participant)
        with self._operation("disconnect", participant) as span:
            async with self._write_section() as state:
                connection = state.find_connection(participant)
                if connection is not None:
                    await self._commit(state, RoutingChanges().remove_connection(connection))

            if connection is None:
                return self._record(
                    span,
                    RoutingResult(
                        RoutingResultType.NO_ACTION_TAKEN,
                        client=participant,
                        detail=f"{participant} is not connected",
                    ),
                )

            logger.keyinfo("Disconnected %s from %s", connection.operator, connection.client)
            return self._record(
                span,
                RoutingResult(
                    RoutingResultType.DISCONNECTED,
                    operator=connection.operator,
                    client=connection.client,
                ),
            )

    async def route_message(self, sender: Participant, payload: Any) -> RoutingResult:
        """
        Relay a message to the sender's connected counterpart.

        Returns:
            OK or FailedToForwardMessage when connected; NoActionTaken
            otherwise (the caller may then request a connection)
        """
        sender = require_participant(sender, "sender")
        with self._operation("route_message", sender) as span:
            state = await self._snapshot()
            connection = state.find_connection(sender, exact=True)
            if connection is None:
                return self._record(
                    span, RoutingResult(RoutingResultType.NO_ACTION_TAKEN, client=sender)
                )

            target = connection.counterpart_of(sender, exact=True)
            if await self._deliver(target, payload):
                result = RoutingResult(
                    RoutingResultType.OK, operator=connection.operator, client=connection.client
                )
            else:
                result = RoutingResult(
                    RoutingResultType.FAILED_TO_FORWARD_MESSAGE,
                    operator=connection.operator,
                    client=connection.client,
                    detail=f"Failed to forward the message to {target}",
                )
            return self._record(span, result)

    async def find_connected_counterpart(self, participant: Participant) -> Participant | None:
        participant = require_participant(participant)
        state = await self._snapshot()
        connection = state.find_connection(participant)
        if connection is None:
            return None
        return connection.counterpart_of(participant, exact=False)

    async def remove_participant(self, participant: Participant) -> list[RoutingResult]:
        """
        Forget a participant and everything that depends on it.

        Users are matched by logical identity across all conversations; a
        participant without account id removes the whole conversation.

        Returns:
            ConnectionRejected per dropped request, Disconnected per dropped
            connection
        """
        participant = require_participant(participant)
        matches = _removal_matcher(participant)

        with self._operation("remove_participant", participant) as span:
            async with self._write_section() as state:
                requests = [r for r in state.pending_requests if matches(r.requester)]
                connections = [
                    c for c in state.connections if matches(c.operator) or matches(c.client)
                ]
                endpoints = (
                    [e for e in state.aggregation_endpoints if e.is_same_conversation(participant)]
                    if participant.is_conversation_wide
                    else []
                )
                users = [p for p in state.user_participants if matches(p)]
                bots = [p for p in state.bot_participants if matches(p)]

                changes = RoutingChanges()
                for request in requests:
                    changes.remove_pending_request(request)
                for connection in connections:
                    changes.remove_connection(connection)
                for endpoint in endpoints:
                    changes.remove_aggregation_endpoint(endpoint)
                for user in users:
                    changes.remove_participant(user)
                for bot in bots:
                    changes.remove_participant(bot, is_bot=True)
                await self._commit(state, changes)

            logger.info(
                "Removed %s: %d request(s), %d connection(s), %d endpoint(s), %d identity(ies)",
                participant,
                len(requests),
                len(connections),
                len(endpoints),
                len(users) + len(bots),
            )
            results = [
                RoutingResult(RoutingResultType.CONNECTION_REJECTED, client=r.requester)
                for r in requests
            ]
            results += [
                RoutingResult(
                    RoutingResultType.DISCONNECTED, operator=c.operator, client=c.client
                )
                for c in connections
            ]
            return [self._record(span, result) for result in results]

    async def delete_all(self) -> None:
        """Delete all routing data, in the store and in memory."""
        with self._operation("delete_all"):
            async with self._write_section() as state:
                await self._store.delete_all()
                state.clear()
                self._results.clear()
            logger.warning("All routing data deleted")

    # ------------------------------------------------------------------
    # Debug listings
    # ------------------------------------------------------------------

    async def pending_requests(self) -> list[PendingRequest]:
        return list((await self._snapshot()).pending_requests)

    async def connections(self) -> list[Connection]:
        return list((await self._snapshot()).connections)

    async def aggregation_endpoints(self) -> list[Participant]:
        return list((await self._snapshot()).aggregation_endpoints)

    async def user_participants(self) -> list[Participant]:
        return list((await self._snapshot()).user_participants)

    async def bot_participants(self) -> list[Participant]:
        return list((await self._snapshot()).bot_participants)

    async def find_pending_request_by_account(
        self, account_id: str, channel_id: str | None = None
    ) -> PendingRequest | None:
        """Resolve an accept/reject command that names the requester by account id."""
        return (await self._snapshot()).find_pending_request_by_account(account_id, channel_id)

    def recent_results(self) -> list[RoutingResult]:
        """Most recent results, oldest first."""
        return list(self._results)


def _removal_matcher(participant: Participant) -> Callable[[Participant], bool]:
    if participant.is_conversation_wide:
        return participant.is_same_conversation
    return lambda p: p.is_same_identity(participant) or p.has_matching_account(participant)


def build_routing_engine(
    config: RoutingConfig | None = None,
    store: RoutingDataStore | None = None,
    transport: MessageTransport | None = None,
) -> RoutingEngine:
    """
    Factory function for a routing engine.

    Args:
        config: Routing policy; defaults to the environment settings
        store: Data store; defaults to the configured backend
        transport: Message transport for relays and broadcasts

    Returns:
        RoutingEngine (call `await engine.initialize()` before use)
    """
    config = config or RoutingConfig()
    if store is None:
        store = create_data_store(config.data_store)
    return RoutingEngine(store, transport=transport, config=config)
