"""aiohttp REST session adapter."""

import json
import ssl
import time
from typing import Any, Optional

import aiohttp
import structlog

from pxlink.core.ports.outbound.rest_client import HttpResponse, IRestClientPort

logger = structlog.get_logger(__name__)


class RestSession(IRestClientPort):
    """
    HTTP client preconfigured for one capability service.

    Holds a base URL, a mutual-TLS context and a Basic-Auth header
    derived from the client name and the provider node's access secret.
    The aiohttp session is created on first use so a RestSession can be
    built outside a running event loop.
    """

    def __init__(
        self,
        base_url: str,
        authorization: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            base_url: Service REST base URL (``restBaseUrl`` property)
            authorization: Value of the Authorization header
            ssl_context: Mutual-TLS context
            timeout: Total request timeout in seconds, None for aiohttp's default
        """
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Authorization": authorization,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._ssl = ssl_context
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            kwargs: dict[str, Any] = {
                "headers": self._headers,
                "json_serialize": lambda x: json.dumps(x, default=str),
            }
            if self._timeout is not None:
                kwargs["timeout"] = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(**kwargs)
        return self._session

    async def post(self, path: str, payload: Any | None = None) -> HttpResponse:
        """POST a JSON payload to ``base_url + path``."""
        url = f"{self._base_url}{path}"
        start = time.time()

        async with self._get_session().post(
            url,
            json=payload if payload is not None else {},
            ssl=self._ssl,
        ) as response:
            text = await response.text()
            elapsed_ms = (time.time() - start) * 1000

            logger.debug(
                "rest_response",
                url=url,
                status_code=response.status,
                elapsed_ms=round(elapsed_ms, 1),
            )

            return HttpResponse(
                status_code=response.status,
                headers=dict(response.headers),
                body=text,
                url=url,
                elapsed_ms=elapsed_ms,
            )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
