"""
REST Client Port - Outbound port for capability REST calls.

Every capability exposed by the controller is a JSON POST against a
per-service base URL, so the port is deliberately narrow.
"""

import base64
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class HttpResponse:
    """HTTP response model."""
    status_code: int
    headers: dict[str, str]
    body: Any

    # Response metadata
    url: str = ""
    elapsed_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_success(self) -> bool:
        """2xx status code."""
        return 200 <= self.status_code < 300

    @property
    def is_client_error(self) -> bool:
        """4xx status code."""
        return 400 <= self.status_code < 500

    @property
    def is_server_error(self) -> bool:
        """5xx status code."""
        return 500 <= self.status_code < 600

    def json(self) -> Any:
        """Body as decoded JSON."""
        if isinstance(self.body, str):
            if not self.body.strip():
                return {}
            return json.loads(self.body)
        return self.body

    def error_message(self) -> str:
        """Backend-provided error message, or a generic one."""
        try:
            data = self.json()
        except ValueError:
            data = self.body
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        if isinstance(data, str) and data.strip():
            return data.strip()
        return f"HTTP {self.status_code}"


def basic_auth_header(username: str, password: str) -> str:
    """Value of an ``Authorization`` header for HTTP Basic auth."""
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {encoded}"


class IRestClientPort(ABC):
    """
    REST Client Port Interface.

    A session bound to one base URL and one set of credentials.

    Usage:
        ```python
        response = await session.post("/getSessions", {})
        if response.is_success:
            sessions = response.json()["sessions"]
        ```
    """

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Base URL all paths are relative to."""
        ...

    @abstractmethod
    async def post(self, path: str, payload: Any | None = None) -> HttpResponse:
        """
        HTTP POST with a JSON body.

        Args:
            path: Path relative to the base URL
            payload: JSON serializable body

        Returns:
            HttpResponse
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close client connections."""
        ...
