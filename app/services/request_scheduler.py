"""Priority request scheduler that throttles calls into the metadata provider.

Requests wait in a priority heap (high > medium > low, FIFO within a tier). A
dispatcher task starts the next request once a concurrency slot is free and
the rate limiter lets it through, which keeps ``min_delay`` between starts.
Failures are handed back to the caller untouched; retrying is the caller's job.
"""

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypedDict, TypeVar

from aiolimiter import AsyncLimiter

from app.models.media import Priority

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRIORITY_VALUES = {Priority.HIGH: 100, Priority.MEDIUM: 50, Priority.LOW: 10}


class SchedulerStatus(TypedDict):
    """Structure returned by ``RequestScheduler.get_status``."""

    queue_length: int
    active_requests: int
    max_concurrency: int
    peak_concurrency: int
    completed_requests: int
    failed_requests: int


@dataclass(order=True)
class _PendingRequest:
    sort_key: tuple[int, int]
    request: Callable[[], Awaitable[Any]] = field(compare=False)
    future: asyncio.Future = field(compare=False)
    priority: Priority = field(compare=False)
    background: bool = field(compare=False, default=False)


class RequestScheduler:
    """Concurrency-limited, rate-limited executor for provider calls."""

    def __init__(
        self,
        max_concurrency: int = 2,
        min_delay: float = 0.2,
    ) -> None:
        self.max_concurrency = max_concurrency
        self.min_delay = min_delay
        # One start per min_delay window; no limiter when there is no delay
        self._limiter = AsyncLimiter(1, min_delay) if min_delay > 0 else None

        self._pending: list[_PendingRequest] = []
        self._sequence = itertools.count()
        self._active = 0
        self._wakeup = asyncio.Event()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._running: set[asyncio.Task] = set()

        self.peak_concurrency = 0
        self.completed_requests = 0
        self.failed_requests = 0

    @classmethod
    def from_settings(cls, settings) -> "RequestScheduler":
        return cls(
            max_concurrency=settings.scheduler_max_concurrency,
            min_delay=settings.scheduler_min_delay,
        )

    async def submit(
        self,
        request: Callable[[], Awaitable[T]],
        priority: Priority | str | None = None,
        background: bool = False,
    ) -> T:
        """Queue ``request`` and wait for its result.

        Args:
            request: Zero-argument coroutine function performing the call.
            priority: high, medium or low. Defaults to low for background
                requests and medium otherwise.
            background: Marks the request as non-interactive work.
        """
        if priority is None:
            priority = Priority.LOW if background else Priority.MEDIUM
        priority = Priority(priority)

        self.start()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        item = _PendingRequest(
            sort_key=(-PRIORITY_VALUES[priority], next(self._sequence)),
            request=request,
            future=future,
            priority=priority,
            background=background,
        )
        heapq.heappush(self._pending, item)
        self._wakeup.set()
        logger.debug(
            "Queued request (priority: %s, background: %s, queue size: %d)",
            priority.value,
            background,
            len(self._pending),
        )
        return await future

    def start(self) -> None:
        """Start the dispatcher if it is not already running."""
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.get_running_loop().create_task(self._run())

    async def shutdown(self) -> None:
        """Stop dispatching, cancel in-flight requests and fail pending callers."""
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None

        for task in self._running:
            task.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()

        while self._pending:
            item = heapq.heappop(self._pending)
            if not item.future.done():
                item.future.cancel()

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._has_ready() and self._active < self.max_concurrency:
                if self._limiter is not None:
                    await self._limiter.acquire()
                # Pop after the limiter so a request queued meanwhile can win
                if self._has_ready():
                    self._start(heapq.heappop(self._pending))

    def _has_ready(self) -> bool:
        """Drop requests whose caller gave up while waiting."""
        while self._pending and self._pending[0].future.done():
            heapq.heappop(self._pending)
        return bool(self._pending)

    def _start(self, item: _PendingRequest) -> None:
        self._active += 1
        self.peak_concurrency = max(self.peak_concurrency, self._active)
        task = asyncio.get_running_loop().create_task(self._execute(item))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _execute(self, item: _PendingRequest) -> None:
        try:
            result = await item.request()
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception as exc:
            self.failed_requests += 1
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            self.completed_requests += 1
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._wakeup.set()

    @property
    def active_requests(self) -> int:
        return self._active

    def get_status(self) -> SchedulerStatus:
        return {
            "queue_length": len(self._pending),
            "active_requests": self._active,
            "max_concurrency": self.max_concurrency,
            "peak_concurrency": self.peak_concurrency,
            "completed_requests": self.completed_requests,
            "failed_requests": self.failed_requests,
        }
