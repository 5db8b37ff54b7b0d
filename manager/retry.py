from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

Sleeper = Callable[[float], Awaitable[None]]


async def _no_sleep(_: float) -> None:
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait before each retry.

    ``max_retries`` counts retries, so a call is attempted at most
    ``max_retries + 1`` times. The wait before retry ``n`` is
    ``base_delay * n`` seconds.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    sleep: Sleeper = field(default=asyncio.sleep, compare=False, repr=False)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        return self.base_delay * attempt

    async def wait(self, attempt: int) -> None:
        await self.sleep(self.delay(attempt))

    def with_retries(self, max_retries: int) -> "RetryPolicy":
        return RetryPolicy(max_retries=max_retries, base_delay=self.base_delay, sleep=self.sleep)

    @classmethod
    def immediate(cls, max_retries: int = 2) -> "RetryPolicy":
        return cls(max_retries=max_retries, base_delay=0.0, sleep=_no_sleep)
