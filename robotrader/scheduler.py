"""
Task scheduler for RoboTrader.

The scan (which tasks are due, when is the next trigger) is separated from
execution: due tasks are put on a work queue in registration order, a
dispatcher starts each one as its own asyncio task, and the scan loop goes
straight back to sleeping. A slow strategy run therefore never delays the
trigger of another task.
"""

import asyncio
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from .logging_utils import TradingLogger, get_trading_logger
from .tasks import Task
from .trigger_clock import utc_now


DEFAULT_IDLE_SLEEP_SECONDS = 60.0


class TaskScheduler:
    """
    Dispatches registered tasks at their trigger times.

    register_task() is the only mutation of the task list; the list lock is
    held for the scan only, never while a task runs.
    """

    def __init__(
        self,
        idle_sleep_seconds: float = DEFAULT_IDLE_SLEEP_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[TradingLogger] = None,
    ):
        self.idle_sleep_seconds = idle_sleep_seconds
        self._clock = clock
        self.logger = logger or get_trading_logger()
        self._tasks: List[Task] = []
        self._lock = threading.Lock()
        self._queue: "asyncio.Queue[Task]" = asyncio.Queue()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()

    def register_task(self, task: Task) -> None:
        with self._lock:
            self._tasks.append(task)
        self.logger.log_task_event(task.name, "registered", task.next_trigger_time)

    @property
    def tasks(self) -> Tuple[Task, ...]:
        with self._lock:
            return tuple(self._tasks)

    def describe(self) -> List[Tuple[str, datetime]]:
        """(name, next trigger) for every task, in registration order."""
        with self._lock:
            return [(t.name, t.next_trigger_time) for t in self._tasks]

    def tick(self, now: Optional[datetime] = None) -> float:
        """
        Queue every due task and advance its trigger.

        Returns:
            Seconds to sleep until the earliest next trigger (0 or more)
        """
        now = now or self._clock()
        with self._lock:
            due = [t for t in self._tasks if t.next_trigger_time <= now]
            for task in due:
                self._queue.put_nowait(task)
                task.update_next_trigger_time(now)
            if not self._tasks:
                return self.idle_sleep_seconds
            next_trigger = min(t.next_trigger_time for t in self._tasks)

        for task in due:
            self.logger.log_task_event(task.name, "queued", task.next_trigger_time)
        return max(0.0, (next_trigger - now).total_seconds())

    def _start(self, task: Task) -> Optional[asyncio.Task]:
        running = self._in_flight.get(task.name)
        if running is not None and not running.done():
            self.logger.logger.warning("task_still_running", task=task.name)
            return None

        handle = asyncio.create_task(self._run_task(task), name=task.name)
        self._in_flight[task.name] = handle
        self._running.add(handle)
        handle.add_done_callback(self._running.discard)
        return handle

    async def _run_task(self, task: Task) -> None:
        self.logger.log_task_event(task.name, "dispatched", task.next_trigger_time)
        try:
            await task.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.log_task_event(
                task.name, "failed", task.next_trigger_time,
                metadata={"error": repr(e)},
            )
            self.logger.logger.exception("task_exception", task=task.name)
            return
        self.logger.log_task_event(task.name, "finished", task.next_trigger_time)

    async def dispatch_pending(self) -> List[asyncio.Task]:
        """Start every queued task without waiting for any of them."""
        started = []
        while not self._queue.empty():
            task = self._queue.get_nowait()
            handle = self._start(task)
            self._queue.task_done()
            if handle is not None:
                started.append(handle)
        return started

    async def _dispatch_loop(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                self._start(task)
            finally:
                self._queue.task_done()

    async def run_forever(self) -> None:
        """Scan and dispatch until stop() is called, then wait for in-flight runs."""
        self._stop_event.clear()
        dispatcher = asyncio.create_task(self._dispatch_loop(), name="dispatcher")
        self.logger.logger.info("scheduler_started", tasks=len(self.tasks))
        try:
            while not self._stop_event.is_set():
                sleep_seconds = self.tick(self._clock())
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            dispatcher.cancel()
            if self._running:
                await asyncio.gather(*self._running, return_exceptions=True)
            self.logger.logger.info("scheduler_stopped")

    def stop(self) -> None:
        self._stop_event.set()
