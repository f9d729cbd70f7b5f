"""
Routing Data Stores
===================

Persistence backends for the routing engine.

Backends:
    - memory: process-local (development, tests, single instance)
    - redis: durable, optionally shared across engine instances

Usage:
    from handoff_router.datastore import create_data_store

    store = create_data_store()  # backend from ROUTING_DATA_STORE
"""

from handoff_router.config.types import DataStoreConfig
from handoff_router.datastore.base import RoutingDataStore
from handoff_router.datastore.memory import InMemoryRoutingDataStore


def create_data_store(config: DataStoreConfig | None = None) -> RoutingDataStore:
    """
    Factory function for the configured routing data store.

    Args:
        config: Store selection; defaults to the environment settings

    Returns:
        Instance of the selected store

    Raises:
        ValueError: If the backend is not supported
    """
    config = config or DataStoreConfig()

    if config.backend == "memory":
        return InMemoryRoutingDataStore()

    if config.backend == "redis":
        from handoff_router.datastore.redis_store import RedisRoutingDataStore
        from handoff_router.redis.manager import RedisManager

        return RedisRoutingDataStore(
            RedisManager(),
            key_prefix=config.redis_key_prefix,
            shared=config.shared,
            lock_timeout=config.lock_timeout,
        )

    raise ValueError(f"Unsupported routing data store: {config.backend}")


__all__ = [
    "InMemoryRoutingDataStore",
    "RoutingDataStore",
    "create_data_store",
]
