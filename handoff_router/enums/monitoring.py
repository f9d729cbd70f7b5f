from enum import Enum


class SpanAttr(str, Enum):
    """
    Standardized span attribute keys for OpenTelemetry tracing.

    Attribute Categories:
    - Core: correlation and identification
    - Application Map: dependency visualization for the data store
    - Routing: hand-off routing outcomes
    """

    # Core
    OPERATION_NAME = "operation.name"
    ERROR_TYPE = "error.type"
    ERROR_MESSAGE = "error.message"

    # Application Map
    PEER_SERVICE = "peer.service"
    SERVER_ADDRESS = "server.address"
    SERVER_PORT = "server.port"
    DB_SYSTEM = "db.system"
    DB_OPERATION = "db.operation"

    # Routing
    ROUTING_CHANNEL_ID = "routing.channel.id"
    ROUTING_CONVERSATION_ID = "routing.conversation.id"
    ROUTING_ACCOUNT_ID = "routing.account.id"
    ROUTING_RESULT_TYPE = "routing.result.type"
    ROUTING_PENDING_COUNT = "routing.pending.count"
    ROUTING_CONNECTION_COUNT = "routing.connection.count"
    ROUTING_BROADCAST_FAILURES = "routing.broadcast.failures"


class PeerService:
    """peer.service values for Application Map dependency visualization."""

    AZURE_MANAGED_REDIS = "azure-managed-redis"
    REDIS = "redis"
    WEBCHAT = "webchat"
