"""
pxlink - pxGrid 2.0 client

Account activation, service discovery, capability REST calls and
STOMP-over-WebSocket publish/subscribe against a pxGrid controller.
"""

__version__ = "0.1.0"

from pxlink.core.domain.models import (
    AccessSecretError,
    AccountDisabledError,
    AccountPendingError,
    AccountState,
    BrokerError,
    BusError,
    BusNotConnectedError,
    CapabilityError,
    ClientIdentity,
    ControlConfig,
    ControllerUnavailableError,
    ControlRequestError,
    ForbiddenError,
    PxgridError,
    RegisteredService,
    ServiceDescriptor,
    ServiceNotFoundError,
    ServicePropertyError,
    UnauthorizedError,
)
from pxlink.core.adapters.stomp_adapter import BusState, StompMessagingAdapter
from pxlink.core.domain.services.discovery import ServiceResolver
from pxlink.core.ports.outbound.messaging import BusMessage
from pxlink.core.services.control import ControlSession
from pxlink.core.services.lease import ReregistrationLease
from pxlink.client import CapabilityResult, Publisher, PxgridClient

__all__ = [
    # Main
    "PxgridClient",
    "ControlSession",
    "StompMessagingAdapter",
    "ServiceResolver",
    "Publisher",
    "ReregistrationLease",
    # Models
    "AccountState",
    "BusMessage",
    "BusState",
    "CapabilityResult",
    "ClientIdentity",
    "ControlConfig",
    "RegisteredService",
    "ServiceDescriptor",
    # Errors
    "PxgridError",
    "ControllerUnavailableError",
    "ControlRequestError",
    "UnauthorizedError",
    "ForbiddenError",
    "AccountPendingError",
    "AccountDisabledError",
    "ServiceNotFoundError",
    "AccessSecretError",
    "ServicePropertyError",
    "CapabilityError",
    "BusError",
    "BusNotConnectedError",
    "BrokerError",
]
