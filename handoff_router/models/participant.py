"""
Participant Identity
====================

Identity of an actor (user, operator or bot) in a specific
channel-and-conversation context, plus the matching rules used
throughout the router.

Matching levels:
    - same-conversation: service endpoint, channel and conversation match
    - same-identity: same-conversation and the same account (or both absent)
    - logical identity: channel + account, stable across conversations
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

_KEY_SEPARATOR = ";"


class InvalidParticipantError(ValueError):
    """Raised when a participant argument is missing or incomplete."""


@dataclass(frozen=True)
class Participant:
    """
    Immutable participant identity.

    Equality and hashing follow same-identity: the display name never
    takes part in matching.

    Attributes:
        service_endpoint: Base URL of the channel connector serving the participant
        channel_id: Channel identifier (e.g. "slack", "webchat")
        conversation_id: Conversation the participant is addressed in
        account_id: Account of a specific user/bot; None denotes the whole conversation
        display_name: Human readable name, informational only
    """

    service_endpoint: str
    channel_id: str
    conversation_id: str
    account_id: str | None = None
    display_name: str | None = field(default=None, compare=False)

    def __post_init__(self):
        for name in ("service_endpoint", "channel_id", "conversation_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise InvalidParticipantError(f"Participant {name} must be a non-empty string")
        if self.account_id == "":
            raise InvalidParticipantError("Participant account_id must be None or non-empty")

    @property
    def is_conversation_wide(self) -> bool:
        """True when the participant denotes everyone in the conversation."""
        return self.account_id is None

    @property
    def logical_key(self) -> tuple[str, str | None]:
        """Stable identity of the actor regardless of conversation."""
        return (self.channel_id, self.account_id)

    @property
    def key(self) -> str:
        """Conversation-scoped identity as a single string (storage field name)."""
        return _KEY_SEPARATOR.join(
            (self.service_endpoint, self.channel_id, self.account_id or "", self.conversation_id)
        )

    def is_same_conversation(self, other: Participant | None) -> bool:
        return (
            other is not None
            and other.service_endpoint == self.service_endpoint
            and other.channel_id == self.channel_id
            and other.conversation_id == self.conversation_id
        )

    def is_same_identity(self, other: Participant | None) -> bool:
        return self.is_same_conversation(other) and other.account_id == self.account_id

    def has_matching_account(self, other: Participant | None) -> bool:
        """Logical identity match; only meaningful for participants with an account."""
        return (
            other is not None
            and self.account_id is not None
            and other.account_id is not None
            and other.logical_key == self.logical_key
        )

    def with_conversation(self, conversation_id: str) -> Participant:
        """Same logical identity, addressed in another conversation."""
        return replace(self, conversation_id=conversation_id)

    def conversation_endpoint(self) -> Participant:
        """The conversation-wide participant this participant belongs to."""
        return replace(self, account_id=None, display_name=None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "service_endpoint": self.service_endpoint,
            "channel_id": self.channel_id,
            "conversation_id": self.conversation_id,
            "account_id": self.account_id,
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Participant:
        """Create from dictionary."""
        return cls(
            service_endpoint=data["service_endpoint"],
            channel_id=data["channel_id"],
            conversation_id=data["conversation_id"],
            account_id=data.get("account_id"),
            display_name=data.get("display_name"),
        )

    def __str__(self) -> str:
        who = self.display_name or self.account_id or "(whole conversation)"
        return f"[{self.channel_id}; {who}; {self.conversation_id}]"


def require_participant(value: Any, argument: str = "participant") -> Participant:
    """Validate an API argument; a missing participant is a caller bug."""
    if value is None:
        raise InvalidParticipantError(f"The {argument} cannot be None")
    if not isinstance(value, Participant):
        raise InvalidParticipantError(
            f"The {argument} must be a Participant, got {type(value).__name__}"
        )
    return value
