"""Outbound ports - interfaces for external system connections."""

from pxlink.core.ports.outbound.messaging import BusMessage, IMessagingPort, MessageHandler
from pxlink.core.ports.outbound.rest_client import (
    HttpResponse,
    IRestClientPort,
    basic_auth_header,
)

__all__ = [
    # Messaging
    "BusMessage",
    "IMessagingPort",
    "MessageHandler",
    # REST
    "HttpResponse",
    "IRestClientPort",
    "basic_auth_header",
]
