"""Domain layer - models and errors."""

from pxlink.core.domain.models import (
    AccountState,
    ClientIdentity,
    ControlConfig,
    RegisteredService,
    ServiceDescriptor,
)

__all__ = [
    "AccountState",
    "ClientIdentity",
    "ControlConfig",
    "RegisteredService",
    "ServiceDescriptor",
]
