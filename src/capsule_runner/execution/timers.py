from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .errors import INVALID_TIMER_HANDLER, TIMER_LIMIT, ExecutionError

logger = logging.getLogger(__name__)

TimerErrorHandler = Callable[[int, BaseException], None]

_MIN_INTERVAL_SECONDS = 0.001


@dataclass(slots=True)
class _TrackedTimer:
    timer_id: int
    handler: Callable[..., Any]
    args: tuple[Any, ...]
    delay: float
    repeat: bool
    handle: asyncio.TimerHandle | None = None


class TimerGovernor:
    """Per-invocation registry of script timers.

    Bounds how many timers may be active at once, shields the host from
    exceptions raised by handlers, and cancels everything on ``dispose``.
    ``dispose`` may run on any thread; once it has run no tracked handler
    fires again, even if the owning loop is still busy.

    Example:
        ```python
        governor = TimerGovernor(max_timers=100, on_error=report)
        governor.attach(asyncio.get_running_loop())
        timer_id = governor.set_timeout(lambda: console.log("tick"), 50)
        governor.dispose()
        ```
    """

    def __init__(self, *, max_timers: int = 100, on_error: TimerErrorHandler | None = None) -> None:
        """Create an empty, unattached governor.

        Example:
            ```python
            governor = TimerGovernor(max_timers=5)
            ```
        """
        self._max_timers = max_timers
        self._on_error = on_error
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active: dict[int, _TrackedTimer] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._next_id = 1
        self._closed = False
        self._lock = threading.Lock()
        self.created = 0

    @property
    def active_count(self) -> int:
        """Return the number of timers that may still fire.

        Example:
            ```python
            assert governor.active_count == 0
            ```
        """
        with self._lock:
            return len(self._active)

    @property
    def closed(self) -> bool:
        """Return whether teardown has run.

        Example:
            ```python
            governor.dispose()
            assert governor.closed
            ```
        """
        return self._closed

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the governor to the loop that runs the script.

        Example:
            ```python
            governor.attach(asyncio.get_running_loop())
            ```
        """
        self._loop = loop

    def set_timeout(self, handler: Any = None, delay_ms: float = 0, *args: Any) -> int:
        """Run ``handler(*args)`` once after ``delay_ms`` milliseconds.

        Example:
            ```python
            timer_id = governor.set_timeout(print, 100, "done")
            ```
        """
        return self._register(handler, delay_ms, args, repeat=False)

    def set_interval(self, handler: Any = None, delay_ms: float = 0, *args: Any) -> int:
        """Run ``handler(*args)`` every ``delay_ms`` milliseconds until cleared.

        Example:
            ```python
            timer_id = governor.set_interval(poll, 250)
            ```
        """
        return self._register(handler, delay_ms, args, repeat=True)

    def clear(self, timer_id: Any = None) -> None:
        """Cancel a timer; unknown or already-fired ids are ignored.

        Example:
            ```python
            governor.clear(timer_id)
            ```
        """
        with self._lock:
            timer = self._active.pop(timer_id, None) if isinstance(timer_id, int) else None
        if timer is not None and timer.handle is not None:
            timer.handle.cancel()

    clear_timeout = clear
    clear_interval = clear

    def dispose(self) -> int:
        """Cancel every tracked timer and handler task; safe from any thread.

        Returns the number of timers that were still pending.

        Example:
            ```python
            pending = governor.dispose()
            ```
        """
        with self._lock:
            already_closed = self._closed
            self._closed = True
            timers = list(self._active.values())
            tasks = list(self._tasks)
            self._active.clear()
            self._tasks.clear()
        if already_closed:
            return 0

        loop = self._loop
        if loop is not None and (timers or tasks) and not loop.is_closed():
            # RuntimeError: the loop closed after the check, so nothing can fire.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(_cancel_all, timers, tasks)
        if timers:
            logger.debug(f"Cancelled {len(timers)} pending script timer(s)")
        return len(timers)

    def _register(self, handler: Any, delay_ms: Any, args: tuple[Any, ...], *, repeat: bool) -> int:
        if not callable(handler):
            raise ExecutionError(
                INVALID_TIMER_HANDLER,
                f"Timer handler must be callable, got {type(handler).__name__}",
            )
        delay = max(0.0, float(delay_ms)) / 1000
        if repeat:
            delay = max(delay, _MIN_INTERVAL_SECONDS)
        loop = self._loop
        if loop is None:
            raise RuntimeError("Timer governor is not attached to an event loop")

        with self._lock:
            if self._closed:
                raise RuntimeError("Invocation has finished; timers can no longer be registered")
            if len(self._active) >= self._max_timers:
                raise ExecutionError(
                    TIMER_LIMIT,
                    f"Timer limit exceeded: at most {self._max_timers} timers may be active",
                    details={"limit": self._max_timers},
                )
            timer_id = self._next_id
            self._next_id += 1
            timer = _TrackedTimer(timer_id, handler, args, delay, repeat)
            timer.handle = loop.call_later(delay, self._fire, timer_id)
            self._active[timer_id] = timer
            self.created += 1
        return timer_id

    def _fire(self, timer_id: int) -> None:
        with self._lock:
            timer = self._active.get(timer_id)
            if self._closed or timer is None:
                return
            if timer.repeat:
                timer.handle = self._loop.call_later(timer.delay, self._fire, timer_id)
            else:
                del self._active[timer_id]

        try:
            outcome = timer.handler(*timer.args)
        except (Exception, SystemExit, KeyboardInterrupt) as exc:
            self._report(timer_id, exc)
            return

        if inspect.isawaitable(outcome):
            task = self._loop.create_task(self._settle_handler(timer_id, outcome))
            with self._lock:
                if self._closed:
                    task.cancel()
                    return
                self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _settle_handler(self, timer_id: int, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except (Exception, SystemExit, KeyboardInterrupt) as exc:
            self._report(timer_id, exc)

    def _report(self, timer_id: int, error: BaseException) -> None:
        if self._closed:
            return
        if self._on_error is None:
            logger.warning(f"Unhandled error in script timer {timer_id}: {error!r}")
            return
        self._on_error(timer_id, error)


def _cancel_all(timers: list[_TrackedTimer], tasks: list[asyncio.Task[Any]]) -> None:
    for timer in timers:
        if timer.handle is not None:
            timer.handle.cancel()
    for task in tasks:
        task.cancel()
