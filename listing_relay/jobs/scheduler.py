from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)

ScheduledCallback = Callable[[], Awaitable[object]]


class ScheduledHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def after(self, delay_seconds: float, fn: ScheduledCallback) -> ScheduledHandle: ...

    def cancel_all(self) -> int: ...

    async def drain(self, timeout: float | None = None) -> None: ...


class _AsyncioHandle:
    def __init__(self, scheduler: AsyncioScheduler, fn: ScheduledCallback) -> None:
        self._scheduler = scheduler
        self._fn = fn
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._scheduler._forget(self)

    def _fire(self) -> None:
        self._timer = None
        if self._cancelled:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - callbacks log their own failures
            logger.exception("scheduled callback failed")
        finally:
            self._scheduler._forget(self)


class AsyncioScheduler:
    """Timer-backed scheduler whose pending callbacks can be cancelled on shutdown.

    Nothing here keeps the process alive: pending timers are plain event-loop
    handles, so stopping the loop (or calling ``cancel_all``) drops them.
    """

    def __init__(self) -> None:
        self._handles: set[_AsyncioHandle] = set()

    @property
    def pending_count(self) -> int:
        return len(self._handles)

    def after(self, delay_seconds: float, fn: ScheduledCallback) -> ScheduledHandle:
        loop = asyncio.get_running_loop()
        handle = _AsyncioHandle(self, fn)
        self._handles.add(handle)
        handle._timer = loop.call_later(max(0.0, delay_seconds), handle._fire)
        return handle

    def cancel_all(self) -> int:
        """Cancel timers that have not fired yet. Running callbacks are left to finish."""
        waiting = [handle for handle in self._handles if handle._task is None]
        for handle in waiting:
            handle.cancel()
        return len(waiting)

    async def drain(self, timeout: float | None = None) -> None:
        tasks = [handle._task for handle in list(self._handles) if handle._task is not None]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    def _forget(self, handle: _AsyncioHandle) -> None:
        self._handles.discard(handle)
