"""Reregistration lease - keeps a registered service alive on the controller."""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from pxlink.core.domain.models import PxgridError

logger = structlog.get_logger(__name__)

# Renew this long before the controller-side expiry
REREGISTER_MARGIN_MS = 5000


def renewal_period(interval_ms: int) -> float:
    """
    Seconds between renewals for a controller reregistration interval.

    Renewals fire REREGISTER_MARGIN_MS before the interval elapses. Intervals
    not longer than the margin renew at half the interval.
    """
    if interval_ms > REREGISTER_MARGIN_MS:
        return (interval_ms - REREGISTER_MARGIN_MS) / 1000
    return max(interval_ms, 0) / 2000


class ReregistrationLease:
    """
    Recurring reregistration of one service.

    Returned by ControlSession.auto_service_reregister(). The lease renews
    until cancel() is called. A failed renewal is logged and counted; the
    lease keeps renewing so a transient controller outage does not lose
    the registration for good.
    """

    def __init__(
        self,
        service_id: str,
        period: float,
        renew: Callable[[str], Awaitable[object]],
    ):
        """
        Args:
            service_id: Registered service ID
            period: Seconds between renewals
            renew: Coroutine function performing one reregistration
        """
        self.service_id = service_id
        self.period = period
        self._renew = renew
        self._task: Optional[asyncio.Task[None]] = None
        self.renewals = 0
        self.failures = 0
        self.last_error: Optional[PxgridError] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._renew_loop())
        logger.info(
            "lease_started",
            service_id=self.service_id,
            period=self.period,
        )

    async def cancel(self) -> None:
        """Stop renewing."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("lease_cancelled", service_id=self.service_id)

    async def _renew_loop(self) -> None:
        while True:
            await asyncio.sleep(self.period)
            try:
                await self._renew(self.service_id)
                self.renewals += 1
                logger.debug("lease_renewed", service_id=self.service_id)
            except PxgridError as e:
                self.failures += 1
                self.last_error = e
                logger.warning(
                    "lease_renewal_failed",
                    service_id=self.service_id,
                    error=str(e),
                )
