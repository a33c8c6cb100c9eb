from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from relay.core.clock import Clock, system_clock
from relay.schemas.outbox import ProcessSummary

log = logging.getLogger(__name__)

ProcessFn = Callable[..., Awaitable[ProcessSummary]]
SleepFn = Callable[[float], Awaitable[None]]


class OutboxRunner:
    """
    Periodic in-process trigger for the outbox processor.

    At most one run is in flight per runner: a tick that arrives while a run is
    still executing is dropped, not queued.
    """

    def __init__(
        self,
        process: ProcessFn,
        *,
        interval_seconds: float = 30.0,
        enabled: bool = True,
        clock: Clock = system_clock,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._process = process
        self._interval = interval_seconds
        self._enabled = enabled
        self._clock = clock
        self._sleep = sleep

        self._running = False
        self._task: asyncio.Task | None = None
        self.last_run_at: datetime | None = None
        self.last_summary: ProcessSummary | None = None

    @property
    def in_flight(self) -> bool:
        return self._running

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, **options) -> ProcessSummary | None:
        """Run the processor once. Returns None when a run is already in flight."""
        if self._running:
            log.debug("outbox tick skipped: previous run still in flight")
            return None

        self._running = True
        try:
            self.last_run_at = self._clock.now()
            summary = await self._process(**options)
            self.last_summary = summary
            return summary
        finally:
            self._running = False

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                await self.tick()
            except Exception:
                log.exception("outbox runner error")

    def start(self) -> bool:
        if not self._enabled:
            log.info("outbox runner disabled")
            return False
        if self.started:
            return False

        self._task = asyncio.create_task(self._loop(), name="outbox-runner")
        log.info("outbox runner started interval=%ss", self._interval)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("outbox runner stopped")
