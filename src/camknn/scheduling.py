from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

class CompletionPolicy:
    """Decides how a classification tick waits for its asynchronous similarity result."""

    async def collect(self, pending: Awaitable[Any]) -> Any:
        raise NotImplementedError

class WaitForCompletion(CompletionPolicy):
    """Always await true completion. Records the latency of each wait."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self.last_latency_s: float | None = None

    async def collect(self, pending: Awaitable[Any]) -> Any:
        start = self.clock()
        result = await pending
        self.last_latency_s = self.clock() - start
        return result

class MeasuredDelay(CompletionPolicy):
    """Wait for true completion every `measure_every` ticks and remember how long it took.
    On the other ticks sleep for that latency before collecting the result.
    """

    def __init__(self, measure_every: int = 20, initial_latency_s: float = 1.0,
                 clock: Callable[[], float] = time.perf_counter,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if measure_every < 1:
            raise ValueError(f"measure_every must be positive, got {measure_every}")
        self.measure_every = measure_every
        self.last_latency_s = initial_latency_s
        self.counter = 0
        self.clock = clock
        self.sleep = sleep

    @property
    def measuring(self) -> bool:
        return self.counter == 0

    async def collect(self, pending: Awaitable[Any]) -> Any:
        if self.measuring:
            start = self.clock()
            result = await pending
            self.last_latency_s = self.clock() - start
            log.debug("measured classification latency %.1f ms", self.last_latency_s * 1000)
        else:
            await self.sleep(self.last_latency_s)
            result = await pending
        self.counter = (self.counter + 1) % self.measure_every
        return result

def make_policy(completion: str = "wait", measure_every: int = 20,
                initial_latency_s: float = 1.0) -> CompletionPolicy:
    if completion == "wait":
        return WaitForCompletion()
    if completion == "delay":
        return MeasuredDelay(measure_every=measure_every, initial_latency_s=initial_latency_s)
    raise ValueError(f"unknown completion policy {completion!r} (expected 'wait' or 'delay')")
