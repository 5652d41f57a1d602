"""Discovery domain service - service lookup bound to access secrets."""

from typing import Protocol

import structlog

from pxlink.core.domain.models import ServiceDescriptor

logger = structlog.get_logger(__name__)


class ControlPort(Protocol):
    """The control operations discovery depends on."""

    async def service_lookup(
        self,
        name: str,
        retry_interval: float = ...,
        max_retries: int = ...,
    ) -> ServiceDescriptor: ...

    async def get_access_secret(self, node_name: str) -> str: ...


class ServiceResolver:
    """
    Domain service for service resolution.

    Turns a service name into a descriptor carrying the provider node's
    access secret, ready for building REST or message bus sessions.
    Every resolution looks the service up again; secrets are refetched
    too unless cache_secrets is enabled.
    """

    def __init__(
        self,
        control: ControlPort,
        retry_interval: float = 30.0,
        max_retries: int = 10,
        cache_secrets: bool = False,
    ):
        """
        Initialize resolver.

        Args:
            control: Control session used for lookups and secrets
            retry_interval: Seconds between lookups while no provider is registered
            max_retries: Lookup retries before giving up
            cache_secrets: Keep access secrets per node until invalidated
        """
        self._control = control
        self._retry_interval = retry_interval
        self._max_retries = max_retries
        self._cache_secrets = cache_secrets
        self._secrets: dict[str, str] = {}

    async def resolve(self, name: str) -> ServiceDescriptor:
        """
        Resolve a service and bind the provider's access secret.

        Args:
            name: Service name, e.g. ``com.cisco.ise.session``

        Returns:
            Descriptor with secret set

        Raises:
            PxgridError: Lookup or secret retrieval failed
        """
        descriptor = await self._control.service_lookup(
            name,
            retry_interval=self._retry_interval,
            max_retries=self._max_retries,
        )
        secret = await self._secret_for(descriptor.node_name)

        logger.debug(
            "service_resolved",
            service=name,
            node_name=descriptor.node_name,
        )
        return descriptor.with_secret(secret)

    def invalidate_secret(self, node_name: str) -> None:
        """Forget the cached secret of one node."""
        if self._secrets.pop(node_name, None) is not None:
            logger.info("secret_invalidated", node_name=node_name)

    async def _secret_for(self, node_name: str) -> str:
        if self._cache_secrets and node_name in self._secrets:
            return self._secrets[node_name]

        secret = await self._control.get_access_secret(node_name)
        if self._cache_secrets:
            self._secrets[node_name] = secret
        return secret
