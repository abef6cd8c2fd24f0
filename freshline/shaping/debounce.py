"""Trailing-edge debounce for bursty inputs (typing, resize, scroll)."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Generic, Optional, Set, TypeVar, Union

from freshline.core.metrics import SHAPER_DELIVERIES_TOTAL, SHAPER_DROPPED_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")

Emitter = Callable[[T], Union[None, Awaitable[None]]]


class Debouncer(Generic[T]):
    """Emit the latest pushed value once ``delay`` seconds pass without input.

    Every ``push`` cancels the pending timer and replaces the pending value.
    There is no leading-edge emission. After ``cancel`` the instance is dead:
    a pending value is discarded and later pushes are ignored.

    Must be used from inside a running event loop.
    """

    def __init__(self, emit: Emitter[T], delay: float, *, name: str = "debounce") -> None:
        if delay <= 0:
            raise ValueError("delay must be > 0")
        self._emit = emit
        self.delay = float(delay)
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._pending: Any = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, value: T) -> None:
        if self._closed:
            logger.debug("debounce.push_after_cancel", extra={"shaper": self.name})
            return
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
            SHAPER_DROPPED_TOTAL.labels(shaper=self.name).inc()
        self._pending = value
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        if self._closed:
            return
        value, self._pending = self._pending, None
        SHAPER_DELIVERIES_TOTAL.labels(shaper=self.name).inc()
        try:
            result = self._emit(value)
        except Exception:
            logger.exception("debounce.emit_failed", extra={"shaper": self.name})
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
                "debounce.emit_failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"shaper": self.name},
            )

    def cancel(self) -> None:
        """Tear down: drop the pending value and stop any in-flight emission."""

        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


__all__ = ["Debouncer"]
