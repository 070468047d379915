"""
Single-worker FIFO queue for outbound provider calls.

Exactly one queued task runs at a time, with a short fixed pause after each
one finishes. Tasks complete in the order they were enqueued.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TaskFactory = Callable[[], Awaitable[Any]]


class RequestQueue:
    """FIFO of coroutine factories drained by one worker."""

    def __init__(self, inter_task_delay: float = 0.1):
        if inter_task_delay < 0:
            raise ValueError("inter_task_delay must be non-negative")
        self.inter_task_delay = inter_task_delay
        self._pending: Deque[Tuple[TaskFactory, asyncio.Future]] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._in_flight = False

    @property
    def pending_count(self) -> int:
        """Number of tasks waiting to start (cancelled ones excluded)."""
        return sum(1 for _, future in self._pending if not future.done())

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def submit(self, task: Callable[[], Awaitable[T]]) -> "asyncio.Future[T]":
        """
        Append a task and return the future that will hold its result.

        Cancelling the future before the task starts drops it from the queue.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending.append((task, future))
        if not self.is_processing:
            self._worker = loop.create_task(self._process_queue())
        return future

    async def enqueue(self, task: Callable[[], Awaitable[T]]) -> T:
        """Queue a task and wait for its result."""
        return await self.submit(task)

    def cancel_pending(self) -> int:
        """Cancel every task that has not started yet. Returns how many were cancelled."""
        cancelled = 0
        while self._pending:
            _, future = self._pending.popleft()
            if future.cancel():
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} queued request(s)")
        return cancelled

    async def join(self) -> None:
        """Wait until the worker has drained the queue."""
        if self._worker is not None:
            await asyncio.shield(self._worker)

    async def _process_queue(self) -> None:
        try:
            while self._pending:
                task, future = self._pending.popleft()
                if future.done():
                    # Cancelled while waiting its turn
                    continue

                self._in_flight = True
                try:
                    result = await task()
                except asyncio.CancelledError:
                    future.cancel()
                    if self._worker_cancelling():
                        raise
                    logger.info("Queued request was cancelled while running")
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self._in_flight = False

                await asyncio.sleep(self.inter_task_delay)
        finally:
            self._worker = None
            # A worker torn down mid-queue must not leave callers waiting forever
            abandoned = self.cancel_pending()
            if abandoned:
                logger.warning(f"Request worker stopped with {abandoned} request(s) still queued")

    @staticmethod
    def _worker_cancelling() -> bool:
        """True when the worker task itself (not the queued task) is being cancelled."""
        current = asyncio.current_task()
        cancelling = getattr(current, "cancelling", None)
        return bool(cancelling and cancelling())
