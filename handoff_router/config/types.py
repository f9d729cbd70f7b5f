"""
Configuration Types
===================

Structured dataclass configuration for the routing engine.
Wraps the flat settings from settings.py.

Usage:
    from handoff_router.config import RoutingConfig

    config = RoutingConfig(reject_if_no_aggregation=True)
"""

from dataclasses import dataclass, field

from .settings import (
    NO_DIRECT_CONVERSATIONS_WITH_CHANNELS,
    PERMITTED_AGGREGATION_CHANNELS,
    PERMITTED_OPERATOR_CHANNELS,
    REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL,
    ROUTING_DATA_STORE,
    ROUTING_LOCK_TIMEOUT_SECONDS,
    ROUTING_REDIS_KEY_PREFIX,
    ROUTING_RESULT_HISTORY_SIZE,
    ROUTING_STORE_SHARED,
)


@dataclass
class DataStoreConfig:
    """Routing data store selection."""

    backend: str = ROUTING_DATA_STORE
    redis_key_prefix: str = ROUTING_REDIS_KEY_PREFIX
    shared: bool = ROUTING_STORE_SHARED
    lock_timeout: float = ROUTING_LOCK_TIMEOUT_SECONDS


@dataclass
class RoutingConfig:
    """Routing engine policy."""

    reject_if_no_aggregation: bool = REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL
    permitted_aggregation_channels: list[str] = field(
        default_factory=lambda: list(PERMITTED_AGGREGATION_CHANNELS)
    )
    permitted_operator_channels: list[str] = field(
        default_factory=lambda: list(PERMITTED_OPERATOR_CHANNELS)
    )
    no_direct_conversation_channels: list[str] = field(
        default_factory=lambda: list(NO_DIRECT_CONVERSATIONS_WITH_CHANNELS)
    )
    result_history_size: int = ROUTING_RESULT_HISTORY_SIZE
    data_store: DataStoreConfig = field(default_factory=DataStoreConfig)

    def to_dict(self) -> dict:
        """Convert to dictionary for diagnostics."""
        return {
            "reject_if_no_aggregation": self.reject_if_no_aggregation,
            "permitted_aggregation_channels": self.permitted_aggregation_channels,
            "permitted_operator_channels": self.permitted_operator_channels,
            "no_direct_conversation_channels": self.no_direct_conversation_channels,
            "result_history_size": self.result_history_size,
            "data_store": {
                "backend": self.data_store.backend,
                "redis_key_prefix": self.data_store.redis_key_prefix,
                "shared": self.data_store.shared,
                "lock_timeout": self.data_store.lock_timeout,
            },
        }
