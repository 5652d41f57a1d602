"""Domain services."""

from pxlink.core.domain.services.discovery import ServiceResolver

__all__ = [
    "ServiceResolver",
]
