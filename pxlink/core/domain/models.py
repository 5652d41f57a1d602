"""Domain models for pxlink."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class AccountState(str, Enum):
    """Account state returned by account activation."""

    ENABLED = "ENABLED"
    PENDING = "PENDING"
    DISABLED = "DISABLED"


class ClientIdentity(BaseModel):
    """The local actor: client name, mutual-TLS material and registration secret."""

    name: str
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    key_password: Optional[str] = None
    ca_bundle: Optional[str] = None
    secret: str = ""

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        if not value:
            raise ValueError("a client name is required")
        return value


class ControlConfig(BaseModel):
    """Controller endpoint set and transport settings."""

    hosts: list[str]
    port: int = 8910
    verify_tls: bool = True
    timeout: float = 1.0

    model_config = {"frozen": True}

    @field_validator("hosts", mode="before")
    @classmethod
    def _normalize_hosts(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [value]
        hosts = [h for h in (value or []) if h]
        if not hosts:
            raise ValueError("at least one controller host is required")
        return hosts

    def control_url(self, host: str) -> str:
        """Base URL of the control API on one host."""
        return f"https://{host}:{self.port}/pxgrid/control"


class ServiceDescriptor(BaseModel):
    """A discovered service: provider node and its connection properties."""

    name: str
    node_name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    secret: Optional[str] = None

    model_config = {"frozen": True}

    @classmethod
    def from_lookup(cls, data: dict[str, Any]) -> "ServiceDescriptor":
        """Build from one entry of a ServiceLookup ``services`` list."""
        return cls(
            name=data.get("name", ""),
            node_name=data.get("nodeName", ""),
            properties=data.get("properties") or {},
        )

    def with_secret(self, secret: str) -> "ServiceDescriptor":
        """Return a copy bound to the owning node's access secret."""
        return self.model_copy(update={"secret": secret})

    def property(self, key: str) -> Any:
        """Get a required service property."""
        if key not in self.properties:
            raise ServicePropertyError(self.name, key)
        return self.properties[key]


class RegisteredService(BaseModel):
    """A service this client registered as a provider."""

    name: str
    id: str
    reregister_time_millis: int = 0

    @classmethod
    def from_response(cls, name: str, data: dict[str, Any]) -> "RegisteredService":
        return cls(
            name=name,
            id=str(data["id"]),
            reregister_time_millis=int(data.get("reregisterTimeMillis", 0)),
        )


# Exception classes
class PxgridError(Exception):
    """Base exception for pxlink errors."""

    pass


class ControllerUnavailableError(PxgridError):
    """None of the configured controller hosts responded."""

    def __init__(self, hosts: list[str], errors: Optional[dict[str, str]] = None):
        self.hosts = hosts
        self.errors = errors or {}
        details = "; ".join(f"{h}: {e}" for h, e in self.errors.items())
        message = f"None of the provided hosts responded ({', '.join(hosts)})"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)


class ControlRequestError(PxgridError):
    """The controller rejected a control request."""

    def __init__(self, path: str, status_code: int, message: str = ""):
        self.path = path
        self.status_code = status_code
        self.message = message
        super().__init__(
            f"Control request {path} failed with HTTP {status_code}"
            + (f": {message}" if message else "")
        )


class UnauthorizedError(ControlRequestError):
    """HTTP 401 from the controller: the client was never activated."""

    def __init__(self, path: str, message: str = ""):
        super().__init__(path, 401, message or "client is not activated, call activate() first")


class ForbiddenError(ControlRequestError):
    """HTTP 403 from the controller: activation is pending approval."""

    def __init__(self, path: str, message: str = ""):
        super().__init__(
            path, 403, message or "client activation is pending approval on the controller"
        )


class AccountPendingError(PxgridError):
    """Account stayed PENDING past the retry budget."""

    def __init__(self, max_retries: int):
        self.max_retries = max_retries
        super().__init__(
            "Account state is PENDING (likely requires approval on the controller). "
            f"Hit max number of retries ({max_retries})."
        )


class AccountDisabledError(PxgridError):
    """Account is DISABLED on the controller."""

    def __init__(self) -> None:
        super().__init__(
            "Client failed to activate because the account state is DISABLED. "
            "Enable the account on the controller and try again."
        )


class ServiceNotFoundError(PxgridError):
    """No provider registered for a service."""

    def __init__(self, service_name: str, max_retries: int):
        self.service_name = service_name
        self.max_retries = max_retries
        super().__init__(
            f"No registered provider for service {service_name}. "
            f"Hit max number of retries ({max_retries})."
        )


class AccessSecretError(PxgridError):
    """The access secret for a peer node could not be obtained."""

    def __init__(self, node_name: str, reason: str = ""):
        self.node_name = node_name
        self.reason = reason
        super().__init__(
            f"Failed to get access secret for node {node_name}"
            + (f": {reason}" if reason else "")
        )


class ServicePropertyError(PxgridError):
    """A service descriptor lacks a required property."""

    def __init__(self, service_name: str, property_name: str):
        self.service_name = service_name
        self.property_name = property_name
        super().__init__(f"Service {service_name} has no property {property_name!r}")


class CapabilityError(PxgridError):
    """A capability REST call failed."""

    def __init__(
        self,
        service_name: str,
        path: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.service_name = service_name
        self.path = path
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class BusError(PxgridError):
    """Message bus error."""

    pass


class BusNotConnectedError(BusError):
    """Operation needs a connected message bus."""

    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Message bus is not connected (state: {state})")


class BrokerError(BusError):
    """The broker sent a STOMP ERROR frame."""

    def __init__(self, message: str, details: str = ""):
        self.message = message
        self.details = details
        super().__init__(f"Broker reported error: {message}")
