"""
Tests for RoutingEngine
=======================

Connection lifecycle, message relay and removal cascades against the
in-memory store with a mocked transport.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from handoff_router.config.types import DataStoreConfig, RoutingConfig
from handoff_router.datastore.memory import InMemoryRoutingDataStore
from handoff_router.engine import ALL_REQUESTS, RoutingEngine, build_routing_engine
from handoff_router.models.participant import InvalidParticipantError
from handoff_router.results import RoutingResultType
from handoff_router.transport.base import MessageTransport
from utils.routing_context import get_routing_correlation


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════


def _config(**overrides) -> RoutingConfig:
    values = {
        "reject_if_no_aggregation": False,
        "permitted_aggregation_channels": [],
        "permitted_operator_channels": [],
        "no_direct_conversation_channels": ["webchat"],
        "result_history_size": 10,
    }
    values.update(overrides)
    return RoutingConfig(**values)


@pytest.fixture
def transport():
    transport = AsyncMock(spec=MessageTransport)
    transport.send.return_value = True
    transport.create_direct_conversation.return_value = None
    return transport


@pytest.fixture
def store():
    return InMemoryRoutingDataStore()


@pytest.fixture
def engine(store, transport):
    return RoutingEngine(store, transport=transport, config=_config())


@pytest_asyncio.fixture
async def engine_with_aggregation(engine, aggregation):
    await engine.add_aggregation_endpoint(aggregation)
    return engine


# ═══════════════════════════════════════════════════════════════════════════════
# TRACKING
# ═══════════════════════════════════════════════════════════════════════════════


class TestTracking:
    @pytest.mark.asyncio
    async def test_track_participant_is_idempotent(self, engine, user):
        assert await engine.track_participant(user) is True
        assert await engine.track_participant(user) is False
        assert await engine.user_participants() == [user]

    @pytest.mark.asyncio
    async def test_track_participant_rejects_none(self, engine):
        with pytest.raises(InvalidParticipantError):
            await engine.track_participant(None)

    @pytest.mark.asyncio
    async def test_track_participants_does_not_track_bot_as_user(
        self, engine, user, participant_factory
    ):
        bot_for_user = participant_factory(
            conversation_id=user.conversation_id, account_id="bot"
        )
        assert await engine.track_participants(sender=user, recipient=bot_for_user) is True
        # The bot talking to itself (e.g. proactive message echo)
        await engine.track_participants(sender=bot_for_user, recipient=bot_for_user)

        assert await engine.user_participants() == [user]
        assert await engine.bot_participants() == [bot_for_user]

    @pytest.mark.asyncio
    async def test_tracking_is_persisted(self, engine, store, user):
        await engine.track_participant(user)

        assert (await store.load_state()).user_participants == [user]

    @pytest.mark.asyncio
    async def test_tracking_and_delete_all_run_in_routing_context(
        self, transport, user, participant_factory
    ):
        operations: list[str] = []

        class _RecordingStore(InMemoryRoutingDataStore):
            async def commit(self, changes):
                operations.append(get_routing_correlation().operation_name)
                await super().commit(changes)

            async def delete_all(self):
                operations.append(get_routing_correlation().operation_name)
                await super().delete_all()

        engine = RoutingEngine(_RecordingStore(), transport=transport, config=_config())
        bot_for_user = participant_factory(conversation_id=user.conversation_id, account_id="bot")

        await engine.track_participant(user)
        await engine.track_participants(sender=user, recipient=bot_for_user)
        await engine.delete_all()

        assert operations == ["track_participant", "track_participants", "delete_all"]


class TestAggregationEndpoints:
    @pytest.mark.asyncio
    async def test_register_and_unregister(self, engine, aggregation):
        assert await engine.add_aggregation_endpoint(aggregation) is True
        assert await engine.add_aggregation_endpoint(aggregation) is False
        assert await engine.aggregation_endpoints() == [aggregation]

        assert await engine.remove_aggregation_endpoint(aggregation) is True
        assert await engine.aggregation_endpoints() == []
        assert await engine.remove_aggregation_endpoint(aggregation) is False

    @pytest.mark.asyncio
    async def test_endpoint_with_account_is_invalid(self, engine, operator):
        with pytest.raises(InvalidParticipantError):
            await engine.add_aggregation_endpoint(operator)

    @pytest.mark.asyncio
    async def test_channel_not_permitted(self, store, transport, aggregation):
        engine = RoutingEngine(
            store, transport=transport, config=_config(permitted_aggregation_channels=["teams"])
        )

        assert await engine.add_aggregation_endpoint(aggregation) is False
        assert await engine.aggregation_endpoints() == []


# ═══════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestRequestConnection:
    @pytest.mark.asyncio
    async def test_duplicate_request(self, engine_with_aggregation, user):
        engine = engine_with_aggregation

        first = await engine.request_connection(user)
        second = await engine.request_connection(user)

        assert first.type == RoutingResultType.CONNECTION_REQUESTED
        assert second.type == RoutingResultType.CONNECTION_ALREADY_REQUESTED
        assert [r.requester for r in await engine.pending_requests()] == [user]

    @pytest.mark.asyncio
    async def test_request_is_broadcast_to_aggregation_endpoints(
        self, engine_with_aggregation, transport, user, aggregation
    ):
        await engine_with_aggregation.request_connection(user)

        transport.send.assert_awaited_once()
        target, payload = transport.send.await_args.args
        assert target == aggregation
        assert payload["type"] == "connection_request"
        assert payload["requester"]["account_id"] == "user-1"

    @pytest.mark.asyncio
    async def test_broadcast_failure_still_requests(self, engine_with_aggregation, transport, user):
        transport.send.return_value = False

        result = await engine_with_aggregation.request_connection(user)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED
        assert "1 of 1" in result.detail
        assert len(await engine_with_aggregation.pending_requests()) == 1

    @pytest.mark.asyncio
    async def test_broadcast_exception_still_requests(self, engine_with_aggregation, transport, user):
        transport.send.side_effect = ConnectionError("connector down")

        result = await engine_with_aggregation.request_connection(user)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED
        assert len(await engine_with_aggregation.pending_requests()) == 1

    @pytest.mark.asyncio
    async def test_without_aggregation_queues_without_broadcast(self, engine, transport, user):
        result = await engine.request_connection(user)

        assert result.type == RoutingResultType.CONNECTION_REQUESTED
        assert result.detail is None
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_when_no_aggregation_and_policy_set(self, store, transport, user):
        engine = RoutingEngine(store, transport=transport, config=_config(reject_if_no_aggregation=True))

        result = await engine.request_connection(user)

        assert result.type == RoutingResultType.NO_AGGREGATION_CHANNEL
        assert result.is_error
        assert await engine.pending_requests() == []

    @pytest.mark.asyncio
    async def test_argument_overrides_policy(self, engine, user):
        result = await engine.request_connection(user, reject_if_no_aggregation=True)

        assert result.type == RoutingResultType.NO_AGGREGATION_CHANNEL

    @pytest.mark.asyncio
    async def test_already_connected_requester(self, engine_with_aggregation, operator, user):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.connect(operator, user)

        result = await engine.request_connection(user)

        assert result.type == RoutingResultType.ERROR
        assert "already connected" in result.detail
        assert await engine.pending_requests() == []


# ═══════════════════════════════════════════════════════════════════════════════
# CONNECT / REJECT / DISCONNECT
# ═══════════════════════════════════════════════════════════════════════════════


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_moves_request_to_connection(self, engine_with_aggregation, operator, user):
        engine = engine_with_aggregation
        await engine.request_connection(user)

        result = await engine.connect(operator, user)

        assert result.type == RoutingResultType.CONNECTED
        assert result.operator == operator
        assert result.client == user
        assert await engine.pending_requests() == []
        connections = await engine.connections()
        assert len(connections) == 1
        assert (connections[0].operator, connections[0].client) == (operator, user)

    @pytest.mark.asyncio
    async def test_busy_operator_cannot_accept_another(
        self, engine_with_aggregation, operator, user, user2
    ):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.request_connection(user2)
        await engine.connect(operator, user)

        result = await engine.connect(operator, user2)

        assert result.type == RoutingResultType.ERROR
        assert result.client == user
        assert len(await engine.connections()) == 1
        assert [r.requester for r in await engine.pending_requests()] == [user2]

    @pytest.mark.asyncio
    async def test_operator_must_be_in_aggregation(self, engine_with_aggregation, user, user2):
        engine = engine_with_aggregation
        await engine.request_connection(user)

        result = await engine.connect(user2, user)

        assert result.type == RoutingResultType.ERROR
        assert len(await engine.pending_requests()) == 1

    @pytest.mark.asyncio
    async def test_permitted_operator_channel(self, store, transport, user, participant_factory):
        engine = RoutingEngine(
            store, transport=transport, config=_config(permitted_operator_channels=["teams"])
        )
        operator = participant_factory(channel_id="teams", conversation_id="1:1", account_id="op")
        await engine.request_connection(user)

        result = await engine.connect(operator, user)

        assert result.type == RoutingResultType.CONNECTED

    @pytest.mark.asyncio
    async def test_requires_pending_request(self, engine_with_aggregation, operator, user):
        result = await engine_with_aggregation.connect(operator, user)

        assert result.type == RoutingResultType.ERROR
        assert await engine_with_aggregation.connections() == []

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise(self, engine, operator):
        with pytest.raises(InvalidParticipantError):
            await engine.connect(operator, None)


class TestDedicatedConversation:
    @pytest.mark.asyncio
    async def test_operator_is_rekeyed_to_new_conversation(
        self, engine_with_aggregation, transport, operator, user, bot_in_aggregation
    ):
        engine = engine_with_aggregation
        await engine.track_participant(bot_in_aggregation, is_bot=True)
        transport.create_direct_conversation.return_value = "direct-1"
        await engine.request_connection(user)

        result = await engine.connect(operator, user, create_dedicated_conversation=True)

        assert result.type == RoutingResultType.CONNECTED
        assert result.operator.conversation_id == "direct-1"
        assert result.operator.logical_key == operator.logical_key
        transport.create_direct_conversation.assert_awaited_once_with(operator, bot_in_aggregation)
        assert bot_in_aggregation.with_conversation("direct-1") in await engine.bot_participants()
        assert result.operator in await engine.user_participants()

    @pytest.mark.asyncio
    async def test_lookups_follow_the_logical_identity(
        self, engine_with_aggregation, transport, operator, user
    ):
        engine = engine_with_aggregation
        transport.create_direct_conversation.return_value = "direct-1"
        await engine.request_connection(user)
        await engine.connect(operator, user, create_dedicated_conversation=True)

        # Addressed from the aggregation conversation it accepted from
        assert await engine.find_connected_counterpart(operator) == user
        result = await engine.disconnect(operator)

        assert result.type == RoutingResultType.DISCONNECTED
        assert result.operator.conversation_id == "direct-1"

    @pytest.mark.asyncio
    async def test_failed_conversation_creation_keeps_request(
        self, engine_with_aggregation, transport, operator, user
    ):
        engine = engine_with_aggregation
        await engine.request_connection(user)

        result = await engine.connect(operator, user, create_dedicated_conversation=True)

        assert result.type == RoutingResultType.ERROR
        assert result.detail == "Failed to create a direct conversation"
        assert len(await engine.pending_requests()) == 1
        assert await engine.connections() == []

    def test_supports_dedicated_conversation(self, engine, user, operator):
        assert engine.supports_dedicated_conversation(user) is False
        assert engine.supports_dedicated_conversation(operator) is True


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_single(self, engine_with_aggregation, operator, user, user2):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.request_connection(user2)

        results = await engine.reject_connection_request(user, rejecter=operator)

        assert [r.type for r in results] == [RoutingResultType.CONNECTION_REJECTED]
        assert results[0].client == user
        assert results[0].operator == operator
        assert [r.requester for r in await engine.pending_requests()] == [user2]

    @pytest.mark.asyncio
    async def test_reject_all(self, engine_with_aggregation, user, user2):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.request_connection(user2)

        results = await engine.reject_connection_request(ALL_REQUESTS)

        assert [r.client for r in results] == [user, user2]
        assert all(r.type == RoutingResultType.CONNECTION_REJECTED for r in results)
        assert await engine.pending_requests() == []

    @pytest.mark.asyncio
    async def test_nothing_to_reject(self, engine, user):
        results = await engine.reject_connection_request(user)

        assert len(results) == 1
        assert results[0].type == RoutingResultType.ERROR

    @pytest.mark.asyncio
    async def test_unknown_sentinel(self, engine):
        with pytest.raises(ValueError):
            await engine.reject_connection_request("everyone")


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_either_side(self, engine_with_aggregation, operator, user):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.connect(operator, user)

        result = await engine.disconnect(operator)

        assert result.type == RoutingResultType.DISCONNECTED
        assert (result.operator, result.client) == (operator, user)
        assert await engine.find_connected_counterpart(operator) is None
        assert await engine.find_connected_counterpart(user) is None

    @pytest.mark.asyncio
    async def test_disconnect_by_client(self, engine_with_aggregation, operator, user):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.connect(operator, user)

        result = await engine.disconnect(user)

        assert result.type == RoutingResultType.DISCONNECTED
        assert await engine.connections() == []

    @pytest.mark.asyncio
    async def test_not_connected(self, engine, user):
        result = await engine.disconnect(user)

        assert result.type == RoutingResultType.NO_ACTION_TAKEN


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGE RELAY
# ═══════════════════════════════════════════════════════════════════════════════


class TestRouteMessage:
    @pytest_asyncio.fixture
    async def connected(self, engine_with_aggregation, operator, user, transport):
        await engine_with_aggregation.request_connection(user)
        await engine_with_aggregation.connect(operator, user)
        transport.send.reset_mock()
        return engine_with_aggregation

    @pytest.mark.asyncio
    async def test_relay_both_ways(self, connected, transport, operator, user):
        to_operator = await connected.route_message(user, "hello")
        to_user = await connected.route_message(operator, "hi, how can I help?")

        assert to_operator.type == RoutingResultType.OK
        assert to_user.type == RoutingResultType.OK
        assert [call.args for call in transport.send.await_args_list] == [
            (operator, "hello"),
            (user, "hi, how can I help?"),
        ]

    @pytest.mark.asyncio
    async def test_not_connected(self, engine, transport, user):
        result = await engine.route_message(user, "hello")

        assert result.type == RoutingResultType.NO_ACTION_TAKEN
        transport.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requires_conversation_scoped_match(self, connected, transport, operator):
        result = await connected.route_message(operator.with_conversation("elsewhere"), "psst")

        assert result.type == RoutingResultType.NO_ACTION_TAKEN

    @pytest.mark.asyncio
    async def test_delivery_failure(self, connected, transport, user):
        transport.send.return_value = False

        result = await connected.route_message(user, "hello")

        assert result.type == RoutingResultType.FAILED_TO_FORWARD_MESSAGE
        assert len(await connected.connections()) == 1

    @pytest.mark.asyncio
    async def test_transport_exception(self, connected, transport, user):
        transport.send.side_effect = RuntimeError("socket closed")

        result = await connected.route_message(user, "hello")

        assert result.type == RoutingResultType.FAILED_TO_FORWARD_MESSAGE

    @pytest.mark.asyncio
    async def test_without_transport(self, store, aggregation, operator, user):
        engine = RoutingEngine(store, config=_config())
        await engine.add_aggregation_endpoint(aggregation)
        await engine.request_connection(user)
        await engine.connect(operator, user)

        result = await engine.route_message(user, "hello")

        assert result.type == RoutingResultType.FAILED_TO_FORWARD_MESSAGE


# ═══════════════════════════════════════════════════════════════════════════════
# REMOVAL AND HOUSEKEEPING
# ═══════════════════════════════════════════════════════════════════════════════


class TestRemoveParticipant:
    @pytest.mark.asyncio
    async def test_pending_requester(self, engine_with_aggregation, user):
        engine = engine_with_aggregation
        await engine.track_participant(user)
        await engine.request_connection(user)

        results = await engine.remove_participant(user)

        assert [r.type for r in results] == [RoutingResultType.CONNECTION_REJECTED]
        assert await engine.pending_requests() == []
        assert await engine.user_participants() == []

    @pytest.mark.asyncio
    async def test_connected_operator(self, engine_with_aggregation, operator, user):
        engine = engine_with_aggregation
        await engine.request_connection(user)
        await engine.connect(operator, user)

        results = await engine.remove_participant(operator)

        assert [r.type for r in results] == [RoutingResultType.DISCONNECTED]
        assert (results[0].operator, results[0].client) == (operator, user)
        assert await engine.connections() == []

    @pytest.mark.asyncio
    async def test_user_is_removed_across_conversations(self, engine, user):
        elsewhere = user.with_conversation("conv-other")
        await engine.track_participant(user)
        await engine.track_participant(elsewhere)

        await engine.remove_participant(user)

        assert await engine.user_participants() == []

    @pytest.mark.asyncio
    async def test_conversation_removal_drops_aggregation(self, engine_with_aggregation, aggregation):
        results = await engine_with_aggregation.remove_participant(aggregation)

        assert results == []
        assert await engine_with_aggregation.aggregation_endpoints() == []

    @pytest.mark.asyncio
    async def test_unknown_participant(self, engine, user):
        assert await engine.remove_participant(user) == []


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_delete_all(self, engine_with_aggregation, store, operator, user, user2):
        engine = engine_with_aggregation
        await engine.track_participant(user)
        await engine.request_connection(user)
        await engine.request_connection(user2)
        await engine.connect(operator, user)

        await engine.delete_all()

        assert await engine.pending_requests() == []
        assert await engine.connections() == []
        assert await engine.aggregation_endpoints() == []
        state = await store.load_state()
        assert state.user_participants == [] and state.connections == []

    @pytest.mark.asyncio
    async def test_recent_results_are_bounded(self, store, transport, user):
        engine = RoutingEngine(store, transport=transport, config=_config(result_history_size=2))
        for _ in range(4):
            await engine.request_connection(user)

        results = engine.recent_results()

        assert len(results) == 2
        assert all(r.type == RoutingResultType.CONNECTION_ALREADY_REQUESTED for r in results)

    @pytest.mark.asyncio
    async def test_find_pending_request_by_account(self, engine, user, user2):
        await engine.request_connection(user)
        await engine.request_connection(user2)

        request = await engine.find_pending_request_by_account("user-2")

        assert request.requester == user2

    @pytest.mark.asyncio
    async def test_initialize_loads_persisted_state(self, store, transport, aggregation, user):
        first = RoutingEngine(store, transport=transport, config=_config())
        await first.add_aggregation_endpoint(aggregation)
        await first.request_connection(user)

        restarted = RoutingEngine(store, transport=transport, config=_config())
        await restarted.initialize()

        assert await restarted.aggregation_endpoints() == [aggregation]
        assert [r.requester for r in await restarted.pending_requests()] == [user]

    def test_build_routing_engine_uses_configured_store(self, transport):
        engine = build_routing_engine(
            config=_config(data_store=DataStoreConfig(backend="memory")), transport=transport
        )

        assert isinstance(engine.store, InMemoryRoutingDataStore)


# ═══════════════════════════════════════════════════════════════════════════════
# SCENARIOS
# ═══════════════════════════════════════════════════════════════════════════════


class TestScenarios:
    @pytest.mark.asyncio
    async def test_request_accept_disconnect(self, engine, aggregation, operator, user):
        await engine.add_aggregation_endpoint(aggregation)

        requested = await engine.request_connection(user)
        assert requested.type == RoutingResultType.CONNECTION_REQUESTED
        assert [r.requester for r in await engine.pending_requests()] == [user]

        connected = await engine.connect(operator, user)
        assert connected.type == RoutingResultType.CONNECTED
        assert await engine.pending_requests() == []
        assert len(await engine.connections()) == 1

        disconnected = await engine.disconnect(operator)
        assert disconnected.type == RoutingResultType.DISCONNECTED
        assert (disconnected.operator, disconnected.client) == (operator, user)
        assert await engine.connections() == []

    @pytest.mark.asyncio
    async def test_no_aggregation_channel(self, engine, user):
        result = await engine.request_connection(user, reject_if_no_aggregation=True)

        assert result.type == RoutingResultType.NO_AGGREGATION_CHANNEL
        assert await engine.pending_requests() == []

    @pytest.mark.asyncio
    async def test_second_accept_while_busy(self, engine, aggregation, operator, user, user2):
        await engine.add_aggregation_endpoint(aggregation)
        await engine.request_connection(user)
        await engine.request_connection(user2)

        assert (await engine.connect(operator, user)).type == RoutingResultType.CONNECTED
        assert (await engine.connect(operator, user2)).type == RoutingResultType.ERROR
        assert [r.requester for r in await engine.pending_requests()] == [user2]
