"""Throttled, bounded batching of high-frequency streams.

Items arriving less than ``period`` seconds after the previous delivery are
held in a window of at most ``buffer_size`` items (oldest dropped first). The
window is delivered as one batch, in arrival order, as soon as ``period`` has
elapsed since the previous delivery. Consumers therefore see at most one batch
per period and never a batch larger than ``buffer_size``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Generic, List, Optional, Set, TypeVar, Union

from freshline.core.metrics import SHAPER_DELIVERIES_TOTAL, SHAPER_DROPPED_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")

BatchConsumer = Callable[[List[T]], Union[None, Awaitable[None]]]


class ThrottledBuffer(Generic[T]):
    def __init__(
        self,
        deliver: BatchConsumer[T],
        period: float,
        buffer_size: int,
        *,
        name: str = "throttle",
    ) -> None:
        if period <= 0:
            raise ValueError("period must be > 0")
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._deliver = deliver
        self.period = float(period)
        self.buffer_size = int(buffer_size)
        self.name = name
        self._window: Deque[T] = deque(maxlen=self.buffer_size)
        self._last_flush: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.dropped = 0

    @property
    def buffered(self) -> int:
        return len(self._window)

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, item: T) -> None:
        if self._closed:
            return
        loop = asyncio.get_running_loop()
        if len(self._window) == self.buffer_size:
            self.dropped += 1
            SHAPER_DROPPED_TOTAL.labels(shaper=self.name).inc()
        self._window.append(item)

        if self._handle is not None:
            return
        now = loop.time()
        if self._last_flush is None or now - self._last_flush >= self.period:
            self._flush()
        else:
            self._handle = loop.call_at(self._last_flush + self.period, self._flush)

    def _flush(self) -> None:
        self._handle = None
        if self._closed or not self._window:
            return
        batch = list(self._window)
        self._window.clear()
        self._last_flush = asyncio.get_running_loop().time()
        SHAPER_DELIVERIES_TOTAL.labels(shaper=self.name).inc()
        try:
            result = self._deliver(batch)
        except Exception:
            logger.exception("throttle.deliver_failed", extra={"shaper": self.name})
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "throttle.deliver_failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"shaper": self.name},
            )

    def cancel(self) -> None:
        """Stop delivering: pending timer and buffered items are discarded."""

        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._window.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


__all__ = ["ThrottledBuffer"]
