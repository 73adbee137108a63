"""Background pool that revokes sibling sessions after a successful login.

Login handlers submit a job and return immediately. A bounded queue feeds a
fixed number of consumer tasks; when the queue is full the job is dropped
and counted rather than blocking or failing the login.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from loginguard.logging import get_logger
from loginguard.storage.models import LoginSession

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 2
DEFAULT_QUEUE_SIZE = 1000


@dataclass
class RevocationOutcome:
    attempted: int = 0
    revoked: int = 0
    failed: int = 0


@dataclass
class RevocationStats:
    submitted: int = 0
    dropped: int = 0
    attempted: int = 0
    revoked: int = 0
    failed: int = 0
    completed_jobs: int = 0

    def snapshot(self) -> dict:
        return asdict(self)


EnforcementHandler = Callable[[LoginSession, str], Awaitable[RevocationOutcome]]


class SessionRevocationWorker:
    def __init__(
        self,
        handler: EnforcementHandler,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.queue_size = max(1, queue_size)
        self.stats = RevocationStats()
        self._queue: Optional[asyncio.Queue[Tuple[LoginSession, str]]] = None
        self._tasks: List[asyncio.Task] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not all(task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start the consumer tasks on the running loop."""
        self._ensure_started()

    def _ensure_started(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is loop and self.running:
            return
        if self._loop is not None and self._loop is not loop:
            # The previous loop is gone; its queue and tasks cannot be reused
            stranded = self._queue.qsize() if self._queue is not None else 0
            self.stats.dropped += stranded
            logger.warning("revocation_worker_loop_changed", dropped=stranded)
        self._loop = loop
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            loop.create_task(self._consume(index), name=f"session-revocation-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(
            "revocation_worker_started",
            concurrency=self.concurrency,
            queue_size=self.queue_size,
        )

    def submit(self, session: LoginSession, trace_id: str) -> bool:
        """Queue enforcement for a new session; False when the job was dropped."""
        self._ensure_started()
        assert self._queue is not None
        try:
            self._queue.put_nowait((session, trace_id))
        except asyncio.QueueFull:
            self.stats.dropped += 1
            logger.warning(
                "revocation_job_dropped",
                trace_id=trace_id,
                account_id=session.account_id,
                queue_size=self.queue_size,
            )
            return False
        self.stats.submitted += 1
        return True

    async def _consume(self, index: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            session, trace_id = await queue.get()
            try:
                with structlog.contextvars.bound_contextvars(trace_id=trace_id):
                    outcome = await self.handler(session, trace_id)
                self.stats.attempted += outcome.attempted
                self.stats.revoked += outcome.revoked
                self.stats.failed += outcome.failed
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.stats.failed += 1
                logger.error(
                    "revocation_job_failed",
                    trace_id=trace_id,
                    account_id=session.account_id,
                    worker=index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                self.stats.completed_jobs += 1
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        await self._queue.join()

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        if self._loop is asyncio.get_running_loop():
            await asyncio.gather(*tasks, return_exceptions=True)
        self._queue = None
        self._loop = None
        logger.info("revocation_worker_stopped", **self.stats.snapshot())
