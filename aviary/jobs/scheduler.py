"""Polling workers and the scheduler that owns them."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .._utils import logger

Clock = Callable[[], float]
Ticker = Callable[[float], Awaitable[None]]


class PollingWorker:
    """Background loop that calls `poll()` every `interval` seconds.

    `poll()` returns whether it found work. After `idle_shutdown` consecutive
    empty polls the loop exits on its own; `ensure_running()` starts it again
    when new work is queued. The clock and sleep are injectable so tests can
    drive the loop without real time passing.
    """

    name = "worker"

    def __init__(
        self,
        interval: float,
        idle_shutdown: Optional[int] = None,
        clock: Clock = time.monotonic,
        ticker: Optional[Ticker] = None,
    ):
        self.interval = interval
        self.idle_shutdown = idle_shutdown
        self.clock = clock
        self.ticker = ticker
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.empty_polls = 0
        self.last_poll: Optional[float] = None
        self._woken = False

    async def poll(self) -> bool:
        """Process available work. Returns True if anything was found."""
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop = asyncio.Event()
        self.empty_polls = 0
        self._woken = False
        self._task = asyncio.create_task(self._run(), name=f"aviary-{self.name}")
        logger.info(f"[{self.name.upper()}] Started")

    def ensure_running(self) -> None:
        """Start the loop, or keep a live loop from idling out after its current poll."""
        if self.is_running:
            self._woken = True
            return
        self.start()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=max(self.interval, 1.0) * 2)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"[{self.name.upper()}] Stopped")

    async def run_once(self) -> bool:
        """Run a single poll, logging instead of raising loop errors."""
        self.last_poll = self.clock()
        try:
            found = await self.poll()
        except Exception as e:
            logger.error(f"[{self.name.upper()}] Poll failed: {e}")
            return False
        if found:
            self.empty_polls = 0
        else:
            self.empty_polls += 1
        return found

    async def _sleep(self) -> None:
        if self.ticker is not None:
            await self.ticker(self.interval)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.run_once()
            # work queued during an empty poll must get another poll
            if self._woken:
                self._woken = False
                self.empty_polls = 0
            if self.idle_shutdown is not None and self.empty_polls >= self.idle_shutdown:
                logger.info(f"[{self.name.upper()}] No work for {self.empty_polls} polls, shutting down")
                break
            await self._sleep()

    def status(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "running": self.is_running,
            "interval": self.interval,
            "empty_polls": self.empty_polls,
            "last_poll": self.last_poll,
        }


class PeriodicTask(PollingWorker):
    """Run a coroutine function on a fixed interval, forever."""

    def __init__(self, name: str, func: Callable[[], Awaitable[object]], interval: float, **kwargs):
        super().__init__(interval, idle_shutdown=None, **kwargs)
        self.name = name
        self.func = func

    async def poll(self) -> bool:
        await self.func()
        return True


class JobScheduler:
    """Owns the background workers of one service instance.

    Created at startup and passed to whatever needs to queue work;
    `stop()` shuts every worker down gracefully.
    """

    def __init__(self):
        self.workers: Dict[str, PollingWorker] = {}

    def register(self, worker: PollingWorker) -> PollingWorker:
        self.workers[worker.name] = worker
        return worker

    def get(self, name: str) -> PollingWorker:
        return self.workers[name]

    def ensure_running(self, name: str) -> None:
        self.workers[name].ensure_running()

    def start(self, names: Optional[List[str]] = None) -> None:
        for name, worker in self.workers.items():
            if names is None or name in names:
                worker.start()

    async def stop(self) -> None:
        await asyncio.gather(*(worker.stop() for worker in self.workers.values()))

    def status(self) -> Dict[str, Dict[str, object]]:
        return {name: worker.status() for name, worker in self.workers.items()}
