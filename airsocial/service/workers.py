from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol, Sequence

from airsocial.logging import get_logger
from airsocial.service.errors import ServiceError
from airsocial.service.sessions import SessionService

logger = get_logger(__name__)


class Worker(Protocol):
    name: str

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def wait(self) -> None: ...


class WorkerSupervisor:
    """Starts and stops the long-running background workers as one unit."""

    def __init__(self, workers: Sequence[Worker] = ()) -> None:
        self.workers: List[Worker] = list(workers)
        self._started: List[Worker] = []

    def add(self, worker: Worker) -> None:
        self.workers.append(worker)

    async def start(self) -> None:
        """Start every worker; the first failure aborts and is re-raised."""
        for worker in self.workers:
            try:
                await worker.start()
            except Exception as exc:
                logger.error(
                    "worker_start_failed",
                    worker=worker.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise
            self._started.append(worker)
            logger.info("worker_started", worker=worker.name)

    async def stop(self, timeout: Optional[float] = None) -> List[str]:
        """Signal all workers, then wait up to ``timeout`` for their loops to end.

        Workers still running when the wait gives up are cancelled, so nothing
        touches the cache or broker after shutdown closes them. Returns their names.
        """
        started, self._started = self._started, []
        for worker in started:
            try:
                await worker.stop()
            except Exception as exc:
                logger.error("worker_stop_failed", worker=worker.name, error=str(exc))

        if not started:
            return []

        waits = {asyncio.ensure_future(worker.wait()): worker for worker in started}
        done, pending = await asyncio.wait(waits.keys(), timeout=timeout)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "worker_exited_with_error",
                    worker=waits[task].name,
                    error=str(task.exception()),
                )
        stragglers = [waits[task].name for task in pending]
        if stragglers:
            logger.warning("worker_shutdown_timeout", workers=stragglers, timeout=timeout)
            # Cancelling the wait cancels the worker task it is awaiting
            for task in pending:
                task.cancel()
            await asyncio.wait(pending, timeout=timeout)
        else:
            logger.info("workers_stopped", count=len(started))
        return stragglers


class RetentionWorker:
    """Periodically purges refresh tokens past the retention window."""

    name = "refresh_token_retention"

    def __init__(self, sessions: SessionService, *, interval_seconds: float = 3600) -> None:
        self.sessions = sessions
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("retention_worker_already_running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_worker_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def run_once(self) -> int:
        try:
            return await self.sessions.cleanup()
        except ServiceError as exc:
            logger.error("retention_cleanup_failed", error=exc.message)
            return 0

    async def _run_loop(self) -> None:
        while self._running:
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("retention_worker_stopped")
