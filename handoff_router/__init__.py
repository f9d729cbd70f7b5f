"""
Hand-off Router
===============

Routes conversations from a bot to human operators and back.

Usage:
    from handoff_router import Participant, build_routing_engine

    engine = build_routing_engine()
    await engine.initialize()
"""

from handoff_router.engine import ALL_REQUESTS, RoutingEngine, build_routing_engine
from handoff_router.models import (
    Connection,
    InvalidParticipantError,
    Participant,
    PendingRequest,
    RoutingState,
)
from handoff_router.results import (
    LoggingResultHandler,
    RoutingResult,
    RoutingResultHandler,
    RoutingResultType,
)

__all__ = [
    "ALL_REQUESTS",
    "Connection",
    "InvalidParticipantError",
    "LoggingResultHandler",
    "Participant",
    "PendingRequest",
    "RoutingEngine",
    "RoutingResult",
    "RoutingResultHandler",
    "RoutingResultType",
    "RoutingState",
    "build_routing_engine",
]
