import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, TypeVar

from loguru import logger

T = TypeVar("T")

# Timers never fire sooner than this, so a burst of wakeups collapses into one.
MIN_TIMER_DELAY = 0.01


@dataclass
class ThrottleState:
    level: int
    until: float
    last_signal_at: float


@dataclass
class _QueuedTask:
    task: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    meta: Dict[str, Any]


class RateLimiter:
    """
    Single gate for every request sent to the rate-limited directory.

    Tasks start in FIFO order while three conditions hold: fewer than
    ``max_concurrency`` tasks are running, ``min_delay`` seconds have passed
    since the previous start, and the backoff window opened by throttle
    signals has closed.

    Args:
        max_concurrency: Maximum number of tasks running at once
        min_delay: Minimum seconds between two task starts
        base_backoff: Backoff applied after the first throttle signal
        max_backoff: Upper bound for any single backoff
        reset_after: Quiet period after which the throttle level drops to zero
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(
        self,
        max_concurrency: int = 2,
        min_delay: float = 0.75,
        base_backoff: float = 2.0,
        max_backoff: float = 60.0,
        reset_after: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_concurrency = max(1, int(max_concurrency))
        self.min_delay = max(0.0, min_delay)
        self.base_backoff = max(base_backoff, 0.001)
        self.max_backoff = max(max_backoff, 0.001)
        self.reset_after = max(reset_after, self.min_delay)
        self._clock = clock

        ratio = max(self.max_backoff / self.base_backoff, 1.0)
        self.max_level = max(1, math.ceil(math.log2(ratio)) + 1)

        self._queue: Deque[_QueuedTask] = deque()
        self._running: Set["asyncio.Task[None]"] = set()
        self._active = 0
        self._peak_active = 0
        self._last_start: Optional[float] = None
        self._level = 0
        self._until = 0.0
        self._last_signal_at = 0.0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_at = 0.0

    @property
    def active(self) -> int:
        return self._active

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def pending(self) -> int:
        return len(self._queue)

    def throttle_state(self) -> ThrottleState:
        self._maybe_reset(self._clock())
        return ThrottleState(level=self._level, until=self._until, last_signal_at=self._last_signal_at)

    def not_before(self) -> float:
        """Earliest clock time at which the next task may start."""
        self._maybe_reset(self._clock())
        earliest = self._until
        if self._last_start is not None:
            earliest = max(earliest, self._last_start + self.min_delay)
        return earliest

    async def schedule(self, task: Callable[[], Awaitable[T]], **meta: Any) -> T:
        """
        Queue an async operation and wait for its result.

        Args:
            task: Zero-argument callable returning an awaitable
            **meta: Context logged alongside throttle events (query, lead id...)

        Returns:
            Whatever the task returns; its exception propagates unchanged.
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[T]" = loop.create_future()
        self._queue.append(_QueuedTask(task=task, future=future, meta=meta))
        self._pump()
        return await future

    def register_throttle_signal(self, reason: str, **meta: Any) -> float:
        """
        Record a hostile response and push the not-before time forward.

        Returns:
            The backoff delay derived from the new throttle level.
        """
        now = self._clock()
        self._maybe_reset(now)
        self._last_signal_at = now
        if self._level < self.max_level:
            self._level += 1
        delay = min(self.max_backoff, self.base_backoff * (2 ** (self._level - 1)))
        self._until = max(self._until, now + delay)

        details = " ".join(f"{k}={v}" for k, v in meta.items() if v is not None)
        logger.warning(f"Lookup throttled ({reason}): level={self._level} delay={delay:.2f}s {details}".rstrip())

        if self._queue:
            self._arm_timer(self._until - now)
        return delay

    def register_success(self) -> None:
        if self._level > 0:
            self._level -= 1
            if self._level == 0:
                self._until = 0.0
        if self._queue:
            self._pump()

    def _maybe_reset(self, now: float) -> None:
        if self._level == 0:
            return
        if now - self._last_signal_at >= self.reset_after:
            logger.info(f"Throttle level reset after {self.reset_after:.0f}s without signals")
            self._level = 0
            self._until = 0.0

    def _pump(self) -> None:
        while self._queue and self._active < self.max_concurrency:
            if self._queue[0].future.done():
                # Caller went away before the task started.
                self._queue.popleft()
                continue

            now = self._clock()
            earliest = self.not_before()
            if now < earliest:
                self._arm_timer(earliest - now)
                return

            item = self._queue.popleft()
            self._cancel_timer()
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            self._last_start = now

            runner = asyncio.ensure_future(self._run(item))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, item: _QueuedTask) -> None:
        try:
            result = await item.task()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active = max(self._active - 1, 0)
            self._pump()

    def _arm_timer(self, delay: float) -> None:
        delay = max(delay, MIN_TIMER_DELAY)
        target = self._clock() + delay
        if self._timer is not None and self._timer_at <= target:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer_at = target
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_at = 0.0
        self._pump()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._timer_at = 0.0
