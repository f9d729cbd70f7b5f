import os
import sys
from pathlib import Path

import pytest

# Disable telemetry for tests
os.environ["DISABLE_CLOUD_TELEMETRY"] = "true"

# Deterministic routing policy regardless of the developer's .env
os.environ.setdefault("ROUTING_DATA_STORE", "memory")
os.environ.setdefault("REJECT_CONNECTION_REQUEST_IF_NO_AGGREGATION_CHANNEL", "false")

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from handoff_router.models.participant import Participant  # noqa: E402

SERVICE_URL = "https://connector.example.com/"


def make_participant(
    channel_id: str = "webchat",
    conversation_id: str = "conv-user",
    account_id: str | None = "user-1",
    display_name: str | None = None,
) -> Participant:
    return Participant(
        service_endpoint=SERVICE_URL,
        channel_id=channel_id,
        conversation_id=conversation_id,
        account_id=account_id,
        display_name=display_name,
    )


@pytest.fixture
def user():
    return make_participant(conversation_id="conv-user-1", account_id="user-1", display_name="Ann")


@pytest.fixture
def user2():
    return make_participant(conversation_id="conv-user-2", account_id="user-2", display_name="Bob")


@pytest.fixture
def aggregation():
    return make_participant(channel_id="slack", conversation_id="agents-room", account_id=None)


@pytest.fixture
def operator():
    """An operator writing from the aggregation conversation."""
    return make_participant(
        channel_id="slack", conversation_id="agents-room", account_id="op-1", display_name="Olga"
    )


@pytest.fixture
def bot_in_aggregation():
    return make_participant(channel_id="slack", conversation_id="agents-room", account_id="bot")


@pytest.fixture
def participant_factory():
    return make_participant
