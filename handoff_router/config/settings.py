"""
Routing Settings
================

All environment-loaded configuration for the hand-off router.

Loading Order:
    1. Load .env.local (if exists) - local development overrides
    2. Environment variables (container/cloud deployments) take precedence

Usage:
    from handoff_router.config import REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL
    from handoff_router.config import RoutingConfig
"""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_local():
    """
    Load the first .env file found, without overriding existing variables.

    Search order:
    1. Project root .env.local
    2. Project root .env
    """
    project_root = Path(__file__).parent.parent.parent

    for env_file in (project_root / ".env.local", project_root / ".env"):
        if env_file.exists():
            load_dotenv(env_file, override=False)
            break


_load_dotenv_local()


# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def _env_bool(key: str, default: bool = False) -> bool:
    """Parse boolean from environment variable."""
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes", "on")


def _env_int(key: str, default: int) -> int:
    """Parse integer from environment variable."""
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float) -> float:
    """Parse float from environment variable."""
    return float(os.getenv(key, str(default)))


def _env_list(key: str, default: str = "", sep: str = ",") -> list[str]:
    """Parse list from comma-separated environment variable."""
    raw = os.getenv(key, default)
    return [item.strip().lower() for item in raw.split(sep) if item.strip()]


# ==============================================================================
# ROUTING POLICY
# ==============================================================================

# Answer NoAggregationChannel instead of queueing when nobody can see the request
REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL: bool = _env_bool(
    "REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL", False
)

# Channels allowed to host aggregation endpoints (empty = any channel)
PERMITTED_AGGREGATION_CHANNELS: list[str] = _env_list("PERMITTED_AGGREGATION_CHANNELS")

# Channels whose users may accept requests without sitting in an aggregation endpoint
PERMITTED_OPERATOR_CHANNELS: list[str] = _env_list("PERMITTED_OPERATOR_CHANNELS")

# Channels where no dedicated operator conversation is opened on accept
NO_DIRECT_CONVERSATIONS_WITH_CHANNELS: list[str] = _env_list(
    "NO_DIRECT_CONVERSATIONS_WITH_CHANNELS", "emulator,facebook,skype,webchat"
)

ROUTING_RESULT_HISTORY_SIZE: int = _env_int("ROUTING_RESULT_HISTORY_SIZE", 10)

# ==============================================================================
# ROUTING DATA STORE
# ==============================================================================

ROUTING_DATA_STORE: str = os.getenv("ROUTING_DATA_STORE", "memory").lower()
ROUTING_REDIS_KEY_PREFIX: str = os.getenv("ROUTING_REDIS_KEY_PREFIX", "handoff")
# Shared stores serve several engine instances and provide the write lock
ROUTING_STORE_SHARED: bool = _env_bool("ROUTING_STORE_SHARED", False)
ROUTING_LOCK_TIMEOUT_SECONDS: float = _env_float("ROUTING_LOCK_TIMEOUT_SECONDS", 10.0)
