"""
Delayed Dispatch
Send a batch of messages in random order, each after its own random delay.

Decouples the order and moment a batch is prepared from when each message
hits the relays. Every item is an independent task; the batch completes
when all of them have resolved, successfully or not.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from shroud.logs import short
from shroud.padding import random_delay

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """What happened to one item of a batch."""

    label: str
    delay: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DelayedDispatch:
    """
    Collects send operations and releases them with randomized timing.

    Args:
        max_delay: Upper bound of each item's delay, seconds.
    """

    def __init__(self, max_delay: float = 30.0):
        self.buffer: list[tuple[str, Callable[[], Awaitable]]] = []
        self.max_delay = max_delay

    def add(self, label: str, send: Callable[[], Awaitable]):
        """Queue ``send`` (a zero-argument coroutine function) under ``label``."""
        self.buffer.append((label, send))

    async def _run(self, label: str, send: Callable[[], Awaitable]) -> DispatchOutcome:
        delay = random_delay(self.max_delay)
        await asyncio.sleep(delay)
        try:
            await send()
        except Exception as e:
            logger.warning("Delayed send %s failed: %s", short(label), e)
            return DispatchOutcome(label, delay, str(e) or e.__class__.__name__)
        return DispatchOutcome(label, delay)

    async def flush(self) -> list[DispatchOutcome]:
        """Start every queued item in shuffled order and wait for all of them."""
        items = list(self.buffer)
        random.shuffle(items)
        self.buffer.clear()

        outcomes = await asyncio.gather(*(self._run(label, send) for label, send in items))
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info("Dispatched %d messages, %d failed", len(outcomes), failed)
        return list(outcomes)

    @property
    def size(self):
        """Number of items currently queued."""
        return len(self.buffer)
