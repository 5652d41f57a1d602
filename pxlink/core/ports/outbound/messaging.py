"""Messaging outbound port interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


@dataclass
class BusMessage:
    """Message delivered to a topic subscriber."""

    destination: str
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    binary: bool = False


MessageHandler = Callable[[BusMessage], Awaitable[None]]


class IMessagingPort(ABC):
    """
    Outbound port for publish/subscribe messaging.

    This port defines the interface for:
    - Activating and deactivating the bus connection
    - Publishing JSON payloads to destinations
    - Subscribing handlers to destinations
    """

    @abstractmethod
    async def activate(self) -> None:
        """
        Start connecting to the messaging system.

        Connection happens in the background; use wait_connected()
        to wait for the session to be usable.
        """
        pass

    @abstractmethod
    async def deactivate(self) -> None:
        """
        Disconnect for good. The port cannot be reactivated.
        """
        pass

    @abstractmethod
    async def wait_connected(self, timeout: float | None = None) -> None:
        """
        Wait until the session is connected.

        Args:
            timeout: Seconds to wait, None waits forever
        """
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        """
        Check if connected to messaging system.

        Returns:
            True if connected, False otherwise
        """
        pass

    @abstractmethod
    async def publish(self, destination: str, payload: Any) -> None:
        """
        Publish a message to a destination.

        Args:
            destination: Destination to publish to
            payload: Message payload (serialized as JSON)
        """
        pass

    @abstractmethod
    async def subscribe(self, destination: str, handler: MessageHandler) -> str:
        """
        Subscribe to a destination.

        The subscription survives reconnects.

        Args:
            destination: Destination to subscribe to
            handler: Async handler function for received messages

        Returns:
            Subscription ID for unsubscribing
        """
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from a destination.

        Args:
            subscription_id: ID returned from subscribe()

        Returns:
            True if unsubscribed, False if not found
        """
        pass
