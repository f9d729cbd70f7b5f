"""
Routing Context for Log and Span Correlation.

Carries the identity of the participant an engine operation is working on
(channel, conversation, account) in a context variable so every log line
and span emitted below it is correlated without passing ids around.

Usage:
    with routing_context(participant, operation_name="connect"):
        logger.info("Accepting request")  # includes channel/conversation/account
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from handoff_router.models.participant import Participant


@dataclass
class RoutingCorrelation:
    """Correlation data for a single routing operation."""

    channel_id: str | None = None
    conversation_id: str | None = None
    account_id: str | None = None
    operation_name: str | None = None
    extra: dict = field(default_factory=dict)

    def to_span_attributes(self) -> dict[str, Any]:
        """Convert to OpenTelemetry span attributes."""
        attrs = {}
        if self.channel_id:
            attrs["routing.channel.id"] = self.channel_id
        if self.conversation_id:
            attrs["routing.conversation.id"] = self.conversation_id
        if self.account_id:
            attrs["routing.account.id"] = self.account_id
        if self.operation_name:
            attrs["operation.name"] = self.operation_name
        for key, value in self.extra.items():
            if isinstance(value, (str, int, float, bool)):
                attrs[key] = value
        return attrs

    def to_log_record(self) -> dict[str, Any]:
        """Convert to log record attributes."""
        return {
            "channel_id": self.channel_id or "-",
            "conversation_id": self.conversation_id or "-",
            "account_id": self.account_id or "-",
            "operation_name": self.operation_name or "-",
            **{
                f"routing_{k}": v
                for k, v in self.extra.items()
                if isinstance(v, (str, int, float, bool))
            },
        }


_routing_context: contextvars.ContextVar[RoutingCorrelation | None] = contextvars.ContextVar(
    "routing_correlation", default=None
)


@contextmanager
def routing_context(
    participant: Participant | None = None,
    operation_name: str | None = None,
    **extra: Any,
):
    """Establish routing correlation for the enclosed block."""
    correlation = RoutingCorrelation(
        channel_id=participant.channel_id if participant else None,
        conversation_id=participant.conversation_id if participant else None,
        account_id=participant.account_id if participant else None,
        operation_name=operation_name,
        extra=extra,
    )
    token = _routing_context.set(correlation)
    try:
        yield correlation
    finally:
        _routing_context.reset(token)


def get_routing_correlation() -> RoutingCorrelation | None:
    """Return the current correlation, or None outside routing_context."""
    return _routing_context.get()


def get_span_attributes() -> dict[str, Any]:
    ctx = _routing_context.get()
    return ctx.to_span_attributes() if ctx else {}
