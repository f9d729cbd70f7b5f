"""
Transports
==========

Delivery of routed messages and connection request broadcasts.

Usage:
    from handoff_router.transport import ChannelTransportRegistry, WebChatTransport

    transport = ChannelTransportRegistry({"webchat": WebChatTransport()})
"""

from .base import ChannelTransportRegistry, MessageTransport
from .webchat import WebChatConnectionManager, WebChatTransport

__all__ = [
    "ChannelTransportRegistry",
    "MessageTransport",
    "WebChatConnectionManager",
    "WebChatTransport",
]
