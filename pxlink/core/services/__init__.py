"""Application services."""

from pxlink.core.services.control import ControlSession
from pxlink.core.services.lease import ReregistrationLease
from pxlink.core.services.session_pool import RestSessionPool

__all__ = [
    "ControlSession",
    "ReregistrationLease",
    "RestSessionPool",
]
