"""Adapters - concrete implementations of ports."""

from pxlink.core.adapters.frames import FrameError, FrameParser, StompFrame
from pxlink.core.adapters.rest_adapter import RestSession
from pxlink.core.adapters.stomp_adapter import BusState, StompMessagingAdapter

__all__ = [
    # Messaging
    "BusState",
    "StompMessagingAdapter",
    "StompFrame",
    "FrameParser",
    "FrameError",
    # REST
    "RestSession",
]
