"""
scheduler/scheduler.py — RelayScheduler

Opens and closes the relay at fixed local times. Exactly one asyncio timer
is armed at any moment: for the next start while inside the blackout, for
the next stop otherwise. Firing flips the delivery state and re-arms.

Opening also lifts any rate-limit failover, so with a schedule the daily
reset happens at the start of the relay window instead of at midnight.

Usage:
    scheduler = RelayScheduler(ScheduleWindow.from_config(settings.schedule), controller)
    scheduler.arm()
    ...
    scheduler.cancel()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from chatbridge.observability.logger import get_logger
from chatbridge.relay.delivery import DeliveryController
from chatbridge.scheduler.window import ScheduleWindow

log = get_logger(__name__)


class RelayScheduler:

    def __init__(
        self,
        window: ScheduleWindow,
        controller: DeliveryController,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.window = window
        self._controller = controller
        self._clock = clock
        self._timer: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def arm(self, now: Optional[datetime] = None) -> float:
        """
        Apply the open/closed state for ``now`` and arm the next boundary.

        Returns the delay in seconds until the timer fires.
        """
        self.cancel()
        now = now or self._clock()

        closed = self.window.in_blackout(now)
        self._controller.set_enabled(not closed)

        if closed:
            delay = self.window.time_until_next_start(now).total_seconds()
            boundary = "start"
        else:
            delay = self.window.time_until_next_stop(now).total_seconds()
            boundary = "stop"

        boundary_at = now + timedelta(seconds=delay)
        self._timer = asyncio.create_task(self._fire_at(delay, boundary_at, opening=closed))
        log.info("scheduler.armed", next=boundary, seconds=round(delay), relay_open=not closed)
        return delay

    def cancel(self) -> None:
        if self._timer is not None:
            if not self._timer.done():
                self._timer.cancel()
            self._timer = None

    async def _fire_at(self, delay: float, boundary_at: datetime, *, opening: bool) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        if opening:
            self._controller.set_enabled(True)
            self._controller.reset_failover()
            log.info("scheduler.relay_opened")
        else:
            self._controller.set_enabled(False)
            log.info("scheduler.relay_closed")
        # asyncio timers can fire slightly early
        self.arm(max(self._clock(), boundary_at))
