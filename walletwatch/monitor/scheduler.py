"""
Poll Scheduler
==============

Fixed-interval driver. Every tick hands each registered wallet to the change
detector; the detector's spacing guard decides whether it actually fetches,
which keeps provider traffic independent of the tick rate.
"""

import asyncio
import logging
from typing import List, Optional

from ..config import config
from ..errors import WalletNotMonitoredError
from .detector import ChangeDetector, CheckResult
from .registry import WalletRegistry

logger = logging.getLogger(__name__)


class PollScheduler:
    """Runs `tick()` every `interval` seconds until stopped."""

    def __init__(self, registry: WalletRegistry, detector: ChangeDetector, interval: float = None):
        self.registry = registry
        self.detector = detector
        self.interval = interval or config.poll_interval_sec
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the loop on the running event loop (no-op if already running)."""
        if self.running:
            return
        logger.info(f"Starting wallet monitoring (interval: {self.interval}s)")
        self._task = asyncio.get_running_loop().create_task(self._run(), name="poll-scheduler")

    async def stop(self):
        """Stop the loop and wait for the current tick to unwind."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped wallet monitoring")

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in scheduler tick: {e}")
            await asyncio.sleep(max(0.0, self.interval - (loop.time() - started)))

    async def tick(self) -> List[CheckResult]:
        """
        Check every registered wallet once, in parallel.

        Wallets with a check already in flight are left alone this tick.
        One wallet's failure never affects the others.
        """
        wallets = [w for w in self.registry.list_all() if not self.detector.is_checking(w.address)]
        if not wallets:
            return []

        logger.debug(f"Checking {len(wallets)} monitored wallets...")
        outcomes = await asyncio.gather(*(self._check_one(w.address) for w in wallets))
        return [r for r in outcomes if r is not None]

    async def _check_one(self, address: str) -> Optional[CheckResult]:
        try:
            return await self.detector.check(address)
        except WalletNotMonitoredError:
            # Deregistered between listing and checking
            return None
        except Exception as e:
            logger.exception(f"Error checking wallet {address}: {e}")
            self.detector.events.publish("check_failed", address, errors={"check": str(e)})
            return None
