"""
Periodic job runner for the node's background loops (bandwidth metering and
usage reporting).

Ticks of one task never overlap: the next interval starts counting after the
previous tick returns, so a stalled tick delays the schedule instead of
queueing more work behind it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

Sleep = Callable[[float], Awaitable[object]]

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
        sleep: Sleep = asyncio.sleep
    ):
        """
        Args:
            name: Task name for logs
            interval: Seconds between the end of one tick and the next
            func: Async callable run each tick
            run_immediately: Run the first tick without waiting an interval
            sleep: Interval sleep (tests pass a fast-forwarding one)
        """
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self.sleep = sleep

        self.running = False
        self.in_tick = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self.stats = {"ticks": 0, "errors": 0}

    async def start(self):
        if self.running:
            logger.warning(f"Periodic task {self.name} already running")
            return

        self.running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Started periodic task {self.name} (every {self.interval}s)")

    async def stop(self, grace: float = 10.0):
        """
        Stop the loop. An in-flight tick gets ``grace`` seconds to finish
        before it is cancelled.
        """
        if not self.running:
            return

        self.running = False
        self._stop_event.set()

        task, self._task = self._task, None
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Periodic task {self.name} did not finish within {grace}s, cancelling")
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        logger.info(f"Stopped periodic task {self.name}")

    async def _wait_interval(self) -> bool:
        """Sleep one interval; False when stop was requested meanwhile."""
        sleeper = asyncio.ensure_future(self.sleep(self.interval))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, stopper):
                pending.cancel()
            await asyncio.gather(sleeper, stopper, return_exceptions=True)
        return self.running and not self._stop_event.is_set()

    async def _loop(self):
        if not self.run_immediately and not await self._wait_interval():
            return

        while self.running:
            self.in_tick = True
            try:
                await self.func()
                self.stats["ticks"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(f"Periodic task {self.name} tick failed: {e}")
            finally:
                self.in_tick = False

            if not await self._wait_interval():
                break
