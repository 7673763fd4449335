"""Run tasks once, on a fixed interval, or on a cron schedule."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Optional, Union

from .cron import CronError, CronSchedule, parse_cron
from .workerpool import Context, Task, WorkerPool

_DEFAULT_TICK_INTERVAL = 0.05
_DEFAULT_MAX_TASKS = 10000
_MAX_TASK_ID_LENGTH = 255
_DEFAULT_INITIAL_DELAY = 0.1
_DEFAULT_MAX_DELAY = 30.0

Seconds = Union[float, timedelta]


def _seconds(value: Seconds) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _run_task(task: Any, ctx: Context) -> None:
    if hasattr(task, "execute"):
        task.execute(ctx)
    else:
        task(ctx)


@dataclass(frozen=True)
class TaskInfo:
    """A snapshot of one scheduled task."""

    task_id: str
    run_at: datetime
    interval: float
    created: datetime


@dataclass
class BackoffTask(Task):
    """Wraps a task and retries it with exponentially growing delays."""

    task: Any
    max_retries: int = 0
    initial_delay: float = 0.0
    max_delay: float = 0.0

    def execute(self, ctx: Context) -> None:
        if self.task is None:
            raise ValueError("wrapped task cannot be None")
        if self.max_retries < 0:
            raise ValueError("max retries cannot be negative")
        delay = self.initial_delay if self.initial_delay > 0 else _DEFAULT_INITIAL_DELAY
        max_delay = self.max_delay if self.max_delay > 0 else _DEFAULT_MAX_DELAY

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0 and ctx.wait(delay):
                ctx.raise_if_done()
            try:
                _run_task(self.task, ctx)
                return
            except Exception as exc:
                last_error = exc
            delay = min(delay * 2, max_delay)

        assert last_error is not None
        raise last_error


@dataclass
class _Entry:
    task_id: str
    task: Any
    run_at: datetime
    created: datetime
    interval: float = 0.0
    cron: Optional[CronSchedule] = field(default=None)

    def info(self) -> TaskInfo:
        return TaskInfo(self.task_id, self.run_at, self.interval, self.created)


class Scheduler:
    """Hands tasks to a worker pool when they fall due."""

    def __init__(
        self,
        worker_pool: Optional[WorkerPool] = None,
        location: Optional[tzinfo] = None,
        tick_interval: float = 0.0,
        max_tasks: int = 0,
    ) -> None:
        self._own_pool = worker_pool is None
        self._pool = WorkerPool(4, 100) if worker_pool is None else worker_pool
        self._location = location
        self._tick = tick_interval if tick_interval > 0 else _DEFAULT_TICK_INTERVAL
        self._max_tasks = max_tasks if max_tasks > 0 else _DEFAULT_MAX_TASKS

        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._running = False
        self._stop_event = threading.Event()

    def __enter__(self) -> "Scheduler":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop().wait()

    @staticmethod
    def _now() -> datetime:
        return datetime.now().astimezone()

    def _zoned(self, moment: datetime) -> datetime:
        return moment if self._location is None else moment.astimezone(self._location)

    @staticmethod
    def _validate(task_id: str, task: Any) -> None:
        if not task_id:
            raise ValueError("task ID cannot be empty")
        if len(task_id) > _MAX_TASK_ID_LENGTH:
            raise ValueError(f"task ID too long (max {_MAX_TASK_ID_LENGTH} characters)")
        if task is None:
            raise ValueError("task cannot be None")

    def _check_free(self, task_id: str) -> None:
        if task_id in self._entries:
            raise ValueError(
                f"task with ID {task_id!r} already exists, "
                "use a different ID or cancel the existing task first"
            )
        if len(self._entries) >= self._max_tasks:
            raise RuntimeError(
                f"cannot schedule task: maximum number of tasks ({self._max_tasks}) reached"
            )

    def schedule(self, task_id: str, task: Any, run_at: datetime) -> None:
        """Run ``task`` once at ``run_at``; a naive time is taken as local."""
        self._validate(task_id, task)
        if run_at is None:
            raise ValueError("task run time cannot be zero")
        if run_at.tzinfo is None:
            run_at = run_at.astimezone()
        with self._lock:
            self._check_free(task_id)
            self._entries[task_id] = _Entry(task_id, task, run_at, self._now())

    def schedule_after(self, task_id: str, task: Any, delay: Seconds) -> None:
        """Run ``task`` once after ``delay`` seconds."""
        self.schedule(task_id, task, self._now() + timedelta(seconds=_seconds(delay)))

    def schedule_repeating(self, task_id: str, task: Any, interval: Seconds) -> None:
        """Run ``task`` now and then every ``interval`` seconds."""
        self._validate(task_id, task)
        seconds = _seconds(interval)
        if seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        with self._lock:
            self._check_free(task_id)
            now = self._now()
            self._entries[task_id] = _Entry(task_id, task, now, now, interval=seconds)

    def schedule_cron(self, task_id: str, cron_expr: str, task: Any) -> None:
        """Run ``task`` whenever the six-field cron expression matches."""
        self._validate(task_id, task)
        if not cron_expr:
            raise ValueError("cron expression cannot be empty")
        try:
            schedule = parse_cron(cron_expr)
        except CronError as exc:
            raise CronError(f"invalid cron expression: {exc}") from exc

        with self._lock:
            self._check_free(task_id)
            now = self._now()
            run_at = schedule.next(self._zoned(now))
            if run_at is None:
                raise CronError(f"cron expression never fires: {cron_expr}")
            self._entries[task_id] = _Entry(task_id, task, run_at, now, cron=schedule)

    def cancel(self, task_id: str) -> bool:
        """Remove a task; True if it was scheduled."""
        with self._lock:
            return self._entries.pop(task_id, None) is not None

    def cancel_all(self) -> None:
        """Remove every task."""
        with self._lock:
            self._entries = {}

    def tasks(self) -> list[TaskInfo]:
        """Snapshots of all scheduled tasks, soonest first."""
        with self._lock:
            infos = [entry.info() for entry in self._entries.values()]
        return sorted(infos, key=lambda info: info.run_at)

    def start(self) -> None:
        """Begin checking for due tasks in a background thread."""
        with self._lock:
            if self._running:
                raise RuntimeError("scheduler already running, call stop() first")
            self._running = True
            self._stop_event = threading.Event()
            threading.Thread(
                target=self._run, args=(self._stop_event,), daemon=True, name="scheduler"
            ).start()

    def stop(self) -> threading.Event:
        """Stop checking; the returned event is set once an owned pool has shut down."""
        with self._lock:
            if self._running:
                self._running = False
                self._stop_event.set()

        stopped = threading.Event()

        def finish() -> None:
            if self._own_pool:
                self._pool.shutdown().wait()
            stopped.set()

        threading.Thread(target=finish, daemon=True).start()
        return stopped

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._tick):
            try:
                self._process_ready()
            except Exception:  # a bad tick must not stop the scheduler
                continue

    def _process_ready(self) -> None:
        now = self._now()
        with self._lock:
            ready = self._collect_ready(now)
        for entry in ready:
            try:
                self._pool.submit(entry.task)
            except Exception:
                continue

    def _collect_ready(self, now: datetime) -> list[_Entry]:
        ready = []
        for task_id, entry in list(self._entries.items()):
            if now < entry.run_at:
                continue
            ready.append(entry)
            if entry.interval > 0:
                entry.run_at = now + timedelta(seconds=entry.interval)
            elif entry.cron is not None:
                run_at = entry.cron.next(self._zoned(now))
                if run_at is None:
                    del self._entries[task_id]
                else:
                    entry.run_at = run_at
            else:
                del self._entries[task_id]
        return ready