"""A fixed-size pool of worker threads with a bounded task queue."""

from __future__ import annotations

import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

_POLL = 0.05
_RESULT_SEND_TIMEOUT = 0.1


class DeadlineExceeded(Exception):
    """Raised or recorded when a context's deadline passes."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


class Cancelled(Exception):
    """Raised or recorded when a context is cancelled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class PoolShutdownError(RuntimeError):
    """Raised when a pool that has been shut down is used."""


class Context:
    """A cancellation signal with an optional deadline, shared down a tree."""

    def __init__(
        self,
        parent: Optional["Context"] = None,
        deadline: Optional[float] = None,
    ) -> None:
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._error: Optional[Exception] = None
        self._children: set[Context] = set()
        self._timer: Optional[threading.Timer] = None
        self._parent = parent

        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

        if parent is not None:
            parent._attach(self)
        if deadline is not None and not self._done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._finish(DeadlineExceeded())
            else:
                self._timer = threading.Timer(remaining, self._finish, args=(DeadlineExceeded(),))
                self._timer.daemon = True
                self._timer.start()

    @property
    def error(self) -> Optional[Exception]:
        """The reason the context ended, or None while it is still live."""
        return self._error

    def _attach(self, child: "Context") -> None:
        with self._lock:
            error = self._error
            if error is None:
                self._children.add(child)
        if error is not None:
            child._finish(error)

    def _detach(self, child: "Context") -> None:
        with self._lock:
            self._children.discard(child)

    def _finish(self, error: Exception) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            self._done.set()
            children = list(self._children)
            self._children.clear()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for child in children:
            child._finish(error)
        if self._parent is not None:
            self._parent._detach(self)

    def cancel(self) -> None:
        """End this context and all contexts derived from it."""
        self._finish(Cancelled())

    def with_timeout(self, timeout: float) -> "Context":
        """Derive a context that ends after ``timeout`` seconds."""
        return Context(self, time.monotonic() + timeout)

    def with_cancel(self) -> "Context":
        """Derive a context that can be cancelled on its own."""
        return Context(self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context ends or ``timeout`` passes; True if it ended."""
        return self._done.wait(timeout)

    def raise_if_done(self) -> None:
        """Raise the context's error if it has ended."""
        if self._error is not None:
            raise self._error

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cancel()


def background() -> Context:
    """Return a fresh root context with no deadline."""
    return Context()


class Task(ABC):
    """A unit of work run by a worker."""

    @abstractmethod
    def execute(self, ctx: Context) -> None:
        """Run the task; raise to report failure."""


class TaskFunc(Task):
    """A task made from a plain function taking a context."""

    def __init__(self, fn: Callable[[Context], Any]) -> None:
        self.fn = fn

    def execute(self, ctx: Context) -> None:
        self.fn(ctx)

    def __repr__(self) -> str:
        return f"TaskFunc({self.fn!r})"


@dataclass
class Result:
    """The outcome of one task run by the pool."""

    task: Any
    error: Optional[BaseException]
    duration: float
    worker_id: int


class WorkerPool:
    """Runs submitted tasks on a fixed number of worker threads."""

    def __init__(
        self,
        worker_count: int,
        queue_size: int = 0,
        task_timeout: Optional[float] = None,
    ) -> None:
        if worker_count <= 0:
            raise ValueError(f"worker count must be positive, got {worker_count}")
        if queue_size < 0:
            raise ValueError(f"queue size cannot be negative, got {queue_size}")
        if queue_size == 0:
            queue_size = worker_count * 2

        self._worker_count = worker_count
        self._task_timeout = task_timeout
        self._tasks: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._results: queue.Queue[Result] = queue.Queue(maxsize=worker_count)
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._closed = threading.Event()
        self._done = threading.Event()
        self._shutdown_started = False

        self._workers = [
            threading.Thread(target=self._run, args=(worker_id,), daemon=True,
                             name=f"worker-{worker_id}")
            for worker_id in range(worker_count)
        ]
        for worker in self._workers:
            worker.start()

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown().wait()

    def submit(self, task: Any) -> None:
        """Queue a task, blocking while the queue is full."""
        if task is None:
            raise TypeError("task cannot be None")
        if not hasattr(task, "execute"):
            if not callable(task):
                raise TypeError(f"not a task: {task!r}")
            task = TaskFunc(task)
        while True:
            if self._stopping.is_set():
                raise PoolShutdownError("cannot submit task: worker pool has been shut down")
            try:
                self._tasks.put(task, timeout=_POLL)
                return
            except queue.Full:
                continue

    def results(self) -> Iterator[Result]:
        """Yield results as they arrive, ending once the pool has shut down."""
        while True:
            try:
                yield self._results.get(timeout=_POLL)
            except queue.Empty:
                if self._closed.is_set() and self._results.empty():
                    return

    def get_result(self, timeout: Optional[float] = None) -> Result:
        """Return the next result, waiting up to ``timeout`` seconds."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            wait = _POLL
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - time.monotonic()))
            try:
                return self._results.get(timeout=wait)
            except queue.Empty:
                if self._closed.is_set() and self._results.empty():
                    raise PoolShutdownError("worker pool has been shut down") from None
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError("no result within the timeout") from None

    def shutdown(self) -> threading.Event:
        """Stop the workers; the returned event is set once they have all exited."""
        with self._lock:
            if not self._shutdown_started:
                self._shutdown_started = True
                self._stopping.set()
                threading.Thread(target=self._finish_shutdown, daemon=True).start()
        return self._done

    def size(self) -> int:
        """Number of workers."""
        return self._worker_count

    def queue_size(self) -> int:
        """Number of tasks waiting to be picked up."""
        return self._tasks.qsize()

    def _finish_shutdown(self) -> None:
        for worker in self._workers:
            worker.join()
        self._closed.set()
        self._done.set()

    def _run(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                task = self._tasks.get(timeout=_POLL)
            except queue.Empty:
                continue
            self._execute(task, worker_id)

    def _execute(self, task: Any, worker_id: int) -> None:
        start = time.monotonic()
        error: Optional[BaseException] = None
        ctx = background()
        if self._task_timeout is not None and self._task_timeout > 0:
            ctx = ctx.with_timeout(self._task_timeout)
        try:
            task.execute(ctx)
        except Exception as exc:  # a failing task must not kill its worker
            error = exc
        finally:
            ctx.cancel()
        self._send_result(Result(task, error, time.monotonic() - start, worker_id))

    def _send_result(self, result: Result) -> None:
        deadline = time.monotonic() + _RESULT_SEND_TIMEOUT
        while not self._stopping.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                self._results.put(result, timeout=min(remaining, 0.01))
                return
            except queue.Full:
                continue