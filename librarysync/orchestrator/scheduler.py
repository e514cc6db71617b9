"""The worker's main loop: heartbeat, periodic seeding, claim and dispatch."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
import time
from types import ModuleType

from librarysync.logging import get_logger
from librarysync.orchestrator import events as orchestrator_events
from librarysync.orchestrator.context import SyncContext
from librarysync.orchestrator.dispatcher import Dispatcher
from librarysync.orchestrator.timer import RecurringSyncTimer
from librarysync.utils import worker_health


class Scheduler:
    """Processes one job at a time; per-job failures never end the loop."""

    def __init__(
        self,
        context: SyncContext,
        *,
        dispatcher: Dispatcher | None = None,
        timer: RecurringSyncTimer | None = None,
        persistence_module: ModuleType | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ctx = context
        self._dispatcher = dispatcher or Dispatcher(context)
        self._timer = timer or RecurringSyncTimer(context)
        self._persistence = persistence_module or context.queue
        self._monotonic = monotonic
        self._logger = get_logger(__name__)
        self._last_heartbeat: float | None = None
        self._last_seed: float | None = None
        self._stop_signal: asyncio.Event | None = None
        self._pending_stop = False
        self.stop_requested = False

    def request_stop(self) -> None:
        self.stop_requested = True
        if self._stop_signal is not None:
            self._stop_signal.set()
        else:
            self._pending_stop = True

    async def run(self, lifespan: asyncio.Event | None = None) -> None:
        """Run until :meth:`request_stop` is called or ``lifespan`` is set."""

        self._prepare_run_state()
        try:
            while not self._should_stop(lifespan):
                try:
                    processed = await self.run_once()
                except Exception:
                    self._logger.exception("Scheduler iteration failed")
                    processed = False
                if not processed:
                    await self._sleep(lifespan)
        finally:
            self.stop_requested = True

    async def run_once(self) -> bool:
        """Execute one iteration; returns whether a job was dispatched."""

        await self._maybe_heartbeat()
        await self._maybe_seed()
        job = await self._persistence.claim_async(
            self._ctx.clock(), lease_s=self._ctx.config.job_lease_s
        )
        if job is None:
            return False
        await self._dispatcher.dispatch(job)
        return True

    async def _maybe_heartbeat(self) -> None:
        now_mono = self._monotonic()
        interval = self._ctx.config.heartbeat_interval_s
        if self._last_heartbeat is not None and now_mono - self._last_heartbeat < interval:
            return
        stamped = await asyncio.to_thread(
            worker_health.record_worker_heartbeat, now=self._ctx.clock()
        )
        self._last_heartbeat = now_mono
        orchestrator_events.emit_heartbeat_event(self._logger, at=stamped)

    async def _maybe_seed(self) -> None:
        now_mono = self._monotonic()
        interval = self._ctx.config.schedule_interval_s
        if self._last_seed is not None and now_mono - self._last_seed < interval:
            return
        self._last_seed = now_mono
        await self._timer.trigger()

    def _prepare_run_state(self) -> None:
        self._stop_signal = asyncio.Event()
        if self._pending_stop:
            self.stop_requested = True
            self._stop_signal.set()
            self._pending_stop = False
        else:
            self.stop_requested = False

    def _should_stop(self, lifespan: asyncio.Event | None) -> bool:
        if self._stop_signal is not None and self._stop_signal.is_set():
            return True
        if lifespan is not None and lifespan.is_set():
            return True
        return False

    async def _sleep(self, lifespan: asyncio.Event | None) -> None:
        timeout = self._ctx.config.poll_interval_s
        waiters: list[asyncio.Task[bool]] = []
        if lifespan is not None:
            waiters.append(asyncio.create_task(lifespan.wait()))
        if self._stop_signal is not None:
            waiters.append(asyncio.create_task(self._stop_signal.wait()))
        if not waiters:
            await asyncio.sleep(timeout)
            return
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task


__all__ = ["Scheduler"]
