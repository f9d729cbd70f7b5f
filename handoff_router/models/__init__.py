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

__all__ = [
    "Connection",
    "InvalidParticipantError",
    "Participant",
    "PendingRequest",
    "RoutingChanges",
    "RoutingState",
    "require_participant",
]
