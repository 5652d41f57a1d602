"""Port interfaces for hexagonal architecture."""

from pxlink.core.ports.outbound.messaging import IMessagingPort
from pxlink.core.ports.outbound.rest_client import IRestClientPort

__all__ = [
    "IMessagingPort",
    "IRestClientPort",
]
