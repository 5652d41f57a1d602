"""Core module - hexagonal architecture ports, domain and adapters."""

# Domain models
from pxlink.core.domain import (
    AccountState,
    ClientIdentity,
    ControlConfig,
    RegisteredService,
    ServiceDescriptor,
)

# Domain services
from pxlink.core.domain.services import ServiceResolver

# Ports
from pxlink.core.ports import IMessagingPort, IRestClientPort

# Adapters
from pxlink.core.adapters import RestSession, StompMessagingAdapter

# Services
from pxlink.core.services import ControlSession, ReregistrationLease, RestSessionPool

__all__ = [
    # Domain Models
    "AccountState",
    "ClientIdentity",
    "ControlConfig",
    "RegisteredService",
    "ServiceDescriptor",
    # Domain Services
    "ServiceResolver",
    # Ports
    "IMessagingPort",
    "IRestClientPort",
    # Adapters
    "RestSession",
    "StompMessagingAdapter",
    # Services
    "ControlSession",
    "ReregistrationLease",
    "RestSessionPool",
]
