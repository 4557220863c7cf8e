"""Cooldown gate inserted between dispatch batches."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateGate:
    """Suspends the caller for a fixed cooldown. Holds no state beyond the duration."""

    def __init__(self, cooldown_ms: int, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if cooldown_ms < 0:
            raise ValueError(f"cooldown_ms must be >= 0, got {cooldown_ms}")
        self.cooldown_ms = cooldown_ms
        self._sleep = sleep

    async def cooldown(self) -> None:
        logger.debug(f"Cooling down for {self.cooldown_ms}ms")
        await self._sleep(self.cooldown_ms / 1000)
