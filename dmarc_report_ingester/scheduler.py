import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()

DEFAULT_INTERVAL_MS = 5 * 60 * 1000


class Scheduler:
    """Runs a job periodically at a fixed rate, starting one interval after
    :meth:`start`.

    Every tick starts the job in its own task. A tick is skipped while the
    previous run, or any other run reported through ``is_busy``, is still in
    progress. Exceptions raised by the job are logged and do not stop the
    schedule.
    """

    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        *,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        enabled: bool = True,
        is_busy: Callable[[], bool] = lambda: False,
    ):
        self.job = job
        self.interval_ms = interval_ms
        self.enabled = enabled
        self.is_busy = is_busy
        self.skipped_ticks = 0
        self._stop: Optional[asyncio.Event] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._current_run: Optional[asyncio.Task] = None
        self._log = logger.bind(logger=self.__class__.__name__)

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def start(self, interval_ms: Optional[int] = None):
        if interval_ms is not None:
            if interval_ms <= 0:
                raise ValueError("interval_ms must be positive")
            self.interval_ms = interval_ms
        if not self.enabled:
            self._log.info("Scheduled processing is disabled.")
            return
        if self.running:
            return
        self._stop = asyncio.Event()
        self._tick_task = asyncio.create_task(self._tick_loop(self._stop))

    async def _tick_loop(self, stop: asyncio.Event):
        interval_seconds = self.interval_ms / 1000
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval_seconds
        await self._log.ainfo(
            "Started scheduled processing.", interval_ms=self.interval_ms
        )
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    stop.wait(), max(0.0, next_tick - loop.time())
                )
            if stop.is_set():
                break
            await self._tick()
            next_tick += interval_seconds

    async def _tick(self):
        if (
            self._current_run is not None and not self._current_run.done()
        ) or self.is_busy():
            self.skipped_ticks += 1
            await self._log.ainfo("Previous run still in progress, skipping tick.")
            return
        self._current_run = asyncio.create_task(self._run_job())

    async def _run_job(self):
        try:
            await self.job()
        except asyncio.CancelledError:
            await self._log.awarning("Scheduled run was cancelled.")
            raise
        except Exception:  # pylint: disable=broad-except
            await self._log.aexception("Scheduled run failed.")

    async def stop(self, timeout_seconds: float = 30):
        if self._stop is not None:
            self._stop.set()
        if self._tick_task is not None:
            await self._tick_task
            self._tick_task = None
        self._stop = None

        run = self._current_run
        if run is not None and not run.done():
            await self._log.ainfo(
                "Waiting for running job to finish.", timeout_seconds=timeout_seconds
            )
            done, _ = await asyncio.wait([run], timeout=timeout_seconds)
            if not done:
                await self._log.awarning("Job did not finish in time, cancelling.")
                run.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await run
        self._current_run = None
        await self._log.ainfo("Stopped scheduled processing.")
