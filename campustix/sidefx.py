"""
Side-effect queue.

Work that must not delay or fail the operation that caused it (artifact
rendering, notifications, provider clean-up) is handed to one worker task
through an ``asyncio.Queue``. Handlers are idempotent; failures are retried
with backoff and finally logged and dropped.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

Handler = Callable[..., Awaitable[None]]


@dataclass
class Job:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1


class SideEffectQueue:
    def __init__(self, max_attempts: int = 5,
                 backoff_seconds: float = 0.5) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff_seconds
        self._handlers: Dict[str, Handler] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._retries: set[asyncio.Task] = set()

    def register(self, kind: str, handler: Handler) -> None:
        self._handlers[kind] = handler

    def enqueue(self, kind: str, **payload: Any) -> None:
        if kind not in self._handlers:
            raise KeyError(f"no handler for side effect {kind!r}")
        self._queue.put_nowait(Job(kind=kind, payload=payload))

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        for t in list(self._retries):
            t.cancel()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def join(self) -> None:
        """Wait until every queued job, including retries, is done."""
        while True:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries),
                                 return_exceptions=True)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        handler = self._handlers[job.kind]
        try:
            await handler(**job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if job.attempt >= self.max_attempts:
                logger.error("side effect {} gave up after {} attempts: {}",
                             job.kind, job.attempt, e)
                return
            logger.warning("side effect {} failed (attempt {}): {}",
                           job.kind, job.attempt, e)
            job.attempt += 1
            task = asyncio.create_task(self._requeue(job))
            self._retries.add(task)
            task.add_done_callback(self._retries.discard)

    async def _requeue(self, job: Job) -> None:
        await asyncio.sleep(self.backoff * (2 ** (job.attempt - 2)))
        self._queue.put_nowait(job)
