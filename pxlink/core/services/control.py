"""
Control Session - authenticated access to the controller's control API.

Owns account activation, service lookup, access secrets and the service
registration lifecycle. Every request fails over across the configured
controller hosts in order.
"""

import asyncio
import ssl
from typing import Any, Optional

import aiohttp
import structlog

from pxlink.core.domain.models import (
    AccessSecretError,
    AccountDisabledError,
    AccountPendingError,
    AccountState,
    ClientIdentity,
    ControlConfig,
    ControllerUnavailableError,
    ControlRequestError,
    ForbiddenError,
    PxgridError,
    RegisteredService,
    ServiceDescriptor,
    ServiceNotFoundError,
    UnauthorizedError,
)
from pxlink.core.ports.outbound.rest_client import HttpResponse, basic_auth_header
from pxlink.core.services.lease import ReregistrationLease, renewal_period
from pxlink.core.tls import build_ssl_context

logger = structlog.get_logger(__name__)

ACCOUNT_ACTIVATE_URL = "/AccountActivate"
SERVICE_LOOKUP_URL = "/ServiceLookup"
ACCESS_SECRET_URL = "/AccessSecret"
SERVICE_REGISTER_URL = "/ServiceRegister"
SERVICE_REREGISTER_URL = "/ServiceReregister"
SERVICE_UNREGISTER_URL = "/ServiceUnregister"

DEFAULT_PORT = 8910

# A host that fails with one of these is skipped in favour of the next host
_TRANSPORT_ERRORS = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ssl.SSLError,
    OSError,
)


class ControlSession:
    """
    Control API session for one client identity.

    Usage:
        ```python
        identity = ClientIdentity(name="my-app", cert_file=..., key_file=..., ca_bundle=...)
        control = ControlSession(identity, hosts=["ise-1.example.com", "ise-2.example.com"])

        await control.activate()
        service = await control.service_lookup("com.cisco.ise.session")
        secret = await control.get_access_secret(service.node_name)
        ```
    """

    def __init__(
        self,
        identity: ClientIdentity,
        hosts: list[str] | str,
        port: int = DEFAULT_PORT,
        verify_tls: bool = True,
        timeout: float = 1.0,
    ):
        """
        Args:
            identity: Client identity
            hosts: Controller hostnames, tried in order
            port: Controller port
            verify_tls: Verify the controller certificate
            timeout: Connect timeout per host attempt, in seconds
        """
        self._identity = identity
        self._config = ControlConfig(
            hosts=hosts,
            port=port,
            verify_tls=verify_tls,
            timeout=timeout,
        )
        self._authorization = basic_auth_header(identity.name, identity.secret)
        self._ssl_context: Optional[ssl.SSLContext] = None

        # service id -> registration
        self._registered: dict[str, RegisteredService] = {}
        # service id -> lease
        self._leases: dict[str, ReregistrationLease] = {}

    @classmethod
    def from_config(cls, identity: ClientIdentity, config: ControlConfig) -> "ControlSession":
        return cls(
            identity,
            hosts=config.hosts,
            port=config.port,
            verify_tls=config.verify_tls,
            timeout=config.timeout,
        )

    @property
    def identity(self) -> ClientIdentity:
        return self._identity

    @property
    def config(self) -> ControlConfig:
        return self._config

    @property
    def ssl_context(self) -> ssl.SSLContext:
        """Mutual-TLS context shared by control, REST and bus connections."""
        if self._ssl_context is None:
            self._ssl_context = build_ssl_context(self._identity, self._config.verify_tls)
        return self._ssl_context

    @property
    def registered_services(self) -> dict[str, RegisteredService]:
        """Registrations made through this session, keyed by service id."""
        return dict(self._registered)

    # === Account ===

    async def activate(
        self,
        description: str = "pxgrid-node",
        retry_interval: float = 60.0,
        max_retries: int = 10,
    ) -> bool:
        """
        Activate the client account on the controller.

        A PENDING account usually waits for approval on the controller, so
        activation is retried every retry_interval seconds until the account
        is ENABLED or max_retries is exceeded.

        Args:
            description: Account description shown on the controller
            retry_interval: Seconds between attempts while PENDING
            max_retries: Retries before giving up

        Returns:
            True once the account is ENABLED

        Raises:
            AccountPendingError: Still PENDING after max_retries
            AccountDisabledError: Account is DISABLED
        """
        attempt = 1
        while True:
            state = await self._account_state(description)

            if state == AccountState.ENABLED:
                logger.info("account_enabled", client=self._identity.name)
                return True

            if state == AccountState.DISABLED:
                logger.error("account_disabled", client=self._identity.name)
                raise AccountDisabledError()

            if attempt > max_retries:
                raise AccountPendingError(max_retries)

            logger.info(
                "account_pending",
                client=self._identity.name,
                attempt=attempt,
                retry_in=retry_interval,
            )
            await self._delay(retry_interval)
            attempt += 1

    async def is_activated(self, description: str = "pxgrid-node") -> bool:
        """Single activation attempt; True if the account is ENABLED."""
        return await self._account_state(description) == AccountState.ENABLED

    async def _account_state(self, description: str) -> AccountState:
        response = await self._post(ACCOUNT_ACTIVATE_URL, {"description": description})
        try:
            return AccountState(response.get("accountState"))
        except ValueError:
            raise PxgridError(f"Unexpected account state: {response.get('accountState')!r}")

    # === Discovery ===

    async def service_lookup(
        self,
        name: str,
        retry_interval: float = 30.0,
        max_retries: int = 10,
    ) -> ServiceDescriptor:
        """
        Look up the provider of a service.

        With no registered provider the lookup is retried every
        retry_interval seconds. With several providers the first wins.

        Raises:
            ServiceNotFoundError: No provider after max_retries
        """
        attempt = 1
        while True:
            response = await self._post(SERVICE_LOOKUP_URL, {"name": name})
            services = response.get("services") or []

            if services:
                descriptor = ServiceDescriptor.from_lookup(services[0])
                logger.debug(
                    "service_found",
                    service=name,
                    node_name=descriptor.node_name,
                    providers=len(services),
                )
                return descriptor

            if attempt > max_retries:
                raise ServiceNotFoundError(name, max_retries)

            logger.info(
                "service_not_registered",
                service=name,
                attempt=attempt,
                retry_in=retry_interval,
            )
            await self._delay(retry_interval)
            attempt += 1

    async def get_access_secret(self, node_name: str) -> str:
        """
        Get the access secret shared with a peer node.

        Raises:
            AccessSecretError: The controller did not provide a secret
        """
        try:
            response = await self._post(ACCESS_SECRET_URL, {"peerNodeName": node_name})
        except (UnauthorizedError, ForbiddenError):
            raise
        except PxgridError as e:
            raise AccessSecretError(node_name, str(e)) from e

        secret = response.get("secret")
        if not secret:
            raise AccessSecretError(node_name, "response has no secret")
        return secret

    # === Registration ===

    async def service_register(
        self,
        name: str,
        properties: dict[str, Any],
    ) -> RegisteredService:
        """Register this client as a provider of a service."""
        response = await self._post(
            SERVICE_REGISTER_URL,
            {"name": name, "properties": properties},
        )
        service = RegisteredService.from_response(name, response)
        self._registered[service.id] = service

        logger.info(
            "service_registered",
            service=name,
            service_id=service.id,
            reregister_time_millis=service.reregister_time_millis,
        )
        return service

    async def service_reregister(self, service_id: str) -> dict[str, Any]:
        """Refresh a registration before the controller reaps it."""
        return await self._post(SERVICE_REREGISTER_URL, {"id": service_id})

    async def service_unregister(self, service_id: str) -> dict[str, Any]:
        """Unregister a service and stop its lease."""
        lease = self._leases.pop(service_id, None)
        if lease is not None:
            await lease.cancel()

        response = await self._post(SERVICE_UNREGISTER_URL, {"id": service_id})
        self._registered.pop(service_id, None)

        logger.info("service_unregistered", service_id=service_id)
        return response

    async def service_unregister_all(self) -> None:
        """Unregister every service registered through this session."""
        for service in list(self._registered.values()):
            await self.service_unregister(service.id)

    def auto_service_reregister(self, service_id: str, interval_ms: int) -> ReregistrationLease:
        """
        Reregister a service periodically, 5 seconds ahead of interval_ms.

        Args:
            service_id: Registered service ID
            interval_ms: reregisterTimeMillis returned on registration

        Returns:
            Lease handle; cancel it to stop reregistering
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")

        lease = self._leases.get(service_id)
        if lease is not None and lease.active:
            return lease

        lease = ReregistrationLease(
            service_id,
            renewal_period(interval_ms),
            self.service_reregister,
        )
        self._leases[service_id] = lease
        lease.start()
        return lease

    async def close(self) -> None:
        """Cancel every reregistration lease."""
        leases = list(self._leases.values())
        self._leases.clear()
        for lease in leases:
            await lease.cancel()

    async def __aenter__(self) -> "ControlSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # === Transport ===

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST to the control API, failing over across hosts in order.

        Transport failures and 5xx answers move on to the next host; the
        first host to answer otherwise decides the outcome.
        """
        errors: dict[str, str] = {}

        for host in self._config.hosts:
            try:
                response = await self._post_to_host(host, path, payload)
            except _TRANSPORT_ERRORS as e:
                errors[host] = str(e) or type(e).__name__
                logger.warning(
                    "control_host_unreachable",
                    host=host,
                    path=path,
                    error=errors[host],
                )
                continue

            if response.is_server_error:
                errors[host] = f"HTTP {response.status_code}"
                logger.warning(
                    "control_host_failed",
                    host=host,
                    path=path,
                    status_code=response.status_code,
                )
                continue

            return self._check_response(path, response)

        raise ControllerUnavailableError(list(self._config.hosts), errors)

    async def _post_to_host(
        self,
        host: str,
        path: str,
        payload: dict[str, Any],
    ) -> HttpResponse:
        url = f"{self._config.control_url(host)}{path}"
        logger.debug("control_request", host=host, path=path)

        async with aiohttp.ClientSession(
            headers={
                "Authorization": self._authorization,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=aiohttp.ClientTimeout(total=None, connect=self._config.timeout),
        ) as session:
            async with session.post(url, json=payload, ssl=self.ssl_context) as response:
                return HttpResponse(
                    status_code=response.status,
                    headers=dict(response.headers),
                    body=await response.text(),
                    url=url,
                )

    @staticmethod
    def _check_response(path: str, response: HttpResponse) -> dict[str, Any]:
        if response.status_code == 401:
            raise UnauthorizedError(path)
        if response.status_code == 403:
            raise ForbiddenError(path)
        if not response.is_success:
            raise ControlRequestError(path, response.status_code, response.error_message())

        try:
            data = response.json()
        except ValueError:
            raise ControlRequestError(path, response.status_code, "response is not valid JSON")
        return data if isinstance(data, dict) else {}

    async def _delay(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
