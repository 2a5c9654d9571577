"""Messaging transport interface and the in-process loopback transport."""
from channels.base import (
    EventSink,
    LinkingError,
    MessagingTransport,
    NotConnectedError,
    TransportError,
    TransportHandle,
)
from channels.loopback import LoopbackTransport

__all__ = [
    "MessagingTransport", "TransportHandle", "EventSink",
    "TransportError", "NotConnectedError", "LinkingError",
    "LoopbackTransport",
]
