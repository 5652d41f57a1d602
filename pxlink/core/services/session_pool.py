"""REST session pool - one authenticated session per capability service."""

import ssl
from typing import Optional

import structlog

from pxlink.core.adapters.rest_adapter import RestSession
from pxlink.core.domain.services.discovery import ServiceResolver
from pxlink.core.ports.outbound.rest_client import basic_auth_header

logger = structlog.get_logger(__name__)


class RestSessionPool:
    """
    Cache of RestSession objects keyed by service name.

    A session is built from the resolved descriptor on first use and
    reused for the lifetime of the pool. Two callers racing on the first
    use of a service may both build a session; the last one stored wins
    and both are equivalent.
    """

    def __init__(
        self,
        resolver: ServiceResolver,
        client_name: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        timeout: Optional[float] = None,
    ):
        self._resolver = resolver
        self._client_name = client_name
        self._ssl = ssl_context
        self._timeout = timeout
        self._sessions: dict[str, RestSession] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, name: str) -> RestSession:
        """Get the session for a service, creating it on first use."""
        session = self._sessions.get(name)
        if session is not None:
            return session

        descriptor = await self._resolver.resolve(name)
        session = RestSession(
            base_url=descriptor.property("restBaseUrl"),
            authorization=basic_auth_header(self._client_name, descriptor.secret or ""),
            ssl_context=self._ssl,
            timeout=self._timeout,
        )
        self._sessions[name] = session

        logger.debug(
            "rest_session_created",
            service=name,
            base_url=session.base_url,
        )
        return session

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
