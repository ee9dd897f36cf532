"""
Upload stability detection.

A file still being copied or uploaded keeps growing. It is considered
complete once its size has stayed the same for a number of consecutive
polls; bigger files get more polls because slow network copies of large
files can stall briefly.
"""

import asyncio
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional

from config import (
    STABILITY_CHECKS_LARGE,
    STABILITY_CHECKS_MEDIUM,
    STABILITY_CHECKS_SMALL,
    STABILITY_LARGE_FILE_BYTES,
    STABILITY_MAX_WAIT,
    STABILITY_POLL_INTERVAL,
    STABILITY_SMALL_FILE_BYTES,
)

logger = logging.getLogger(__name__)


class StabilityResult(str, Enum):
    STABLE = "stable"
    UNSTABLE = "unstable"  # file vanished while being checked
    TIMED_OUT = "timed_out"


def required_checks(size: int) -> int:
    """Number of consecutive unchanged size samples needed for a file of ``size`` bytes."""
    if size < STABILITY_SMALL_FILE_BYTES:
        return STABILITY_CHECKS_SMALL
    if size < STABILITY_LARGE_FILE_BYTES:
        return STABILITY_CHECKS_MEDIUM
    return STABILITY_CHECKS_LARGE


class StabilityMonitor:
    def __init__(
        self,
        poll_interval: float = STABILITY_POLL_INTERVAL,
        max_wait: float = STABILITY_MAX_WAIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self._sleep = sleep
        self._clock = clock

    async def wait_until_stable(self, path: Path) -> StabilityResult:
        started = self._clock()
        last_size: Optional[int] = None
        unchanged = 0

        while True:
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                logger.info(f"{path.name} disappeared during stability check")
                return StabilityResult.UNSTABLE

            if size == last_size:
                unchanged += 1
                if unchanged >= required_checks(size):
                    logger.debug(f"{path.name} stable at {size} bytes after {unchanged} checks")
                    return StabilityResult.STABLE
            else:
                if last_size is not None:
                    logger.debug(f"{path.name} still growing: {last_size} -> {size} bytes")
                unchanged = 0
                last_size = size

            if self._clock() - started >= self.max_wait:
                logger.warning(f"{path.name} did not stabilize within {self.max_wait:.0f}s")
                return StabilityResult.TIMED_OUT

            await self._sleep(self.poll_interval)
