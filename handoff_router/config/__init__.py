"""
Configuration Package
=====================

Centralized configuration for the hand-off router.

Structure:
  - settings.py : Environment-loaded settings (flat)
  - types.py    : Dataclass config objects for structured access

Usage:
    from handoff_router.config import RoutingConfig, ROUTING_DATA_STORE
"""

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
from .types import DataStoreConfig, RoutingConfig

__all__ = [
    "NO_DIRECT_CONVERSATIONS_WITH_CHANNELS",
    "PERMITTED_AGGREGATION_CHANNELS",
    "PERMITTED_OPERATOR_CHANNELS",
    "REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL",
    "ROUTING_DATA_STORE",
    "ROUTING_LOCK_TIMEOUT_SECONDS",
    "ROUTING_REDIS_KEY_PREFIX",
    "ROUTING_RESULT_HISTORY_SIZE",
    "ROUTING_STORE_SHARED",
    "DataStoreConfig",
    "RoutingConfig",
]
