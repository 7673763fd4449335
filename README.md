# taskflow

Building blocks for running work on background threads:

- `taskflow.workerpool` provides `WorkerPool`, a fixed number of worker threads with a
  bounded queue. It supports an optional per-task timeout, records exceptions raised by
  tasks in their results, and shuts down gracefully. The module also has `Context`, a
  small cancellation and deadline object that every task and stage receives.
- `taskflow.scheduler` provides `Scheduler`, which runs tasks once at a given time, once
  after a delay, at a repeating interval, or on a six-field cron expression with seconds
  first. The `BackoffTask` wrapper retries a task with exponential backoff.
- `taskflow.cron` provides `parse_cron` and `CronSchedule`, the cron parser behind the
  scheduler.
- `taskflow.pipeline` provides `Pipeline`, which runs a value through named stages in order.
  It supports callbacks, stopping or continuing on errors, a run timeout, optional
  execution on a worker pool, and per-stage statistics.

## Installation

```
pip install .
```

## Contexts

```python
from taskflow.workerpool import background

ctx = background()                 # no deadline
limited = ctx.with_timeout(2.0)    # ends with DeadlineExceeded after 2 seconds
child = ctx.with_cancel()          # ends with Cancelled when cancelled
ctx.cancel()                       # also ends every context derived from it
child.raise_if_done()              # raises Cancelled
```

`wait(timeout)` blocks until the context ends and returns whether it did. The `error`
attribute holds the reason the context ended, or `None`.

## Worker pool

```python
from taskflow.workerpool import WorkerPool, TaskFunc

pool = WorkerPool(4, 100)          # 4 workers, room for 100 queued tasks

def work(ctx):
    ...                            # raise to report failure

pool.submit(TaskFunc(work))        # a plain callable taking a context also works
result = pool.get_result(timeout=1.0)
if result.error is not None:
    print("task failed:", result.error)

pool.shutdown().wait()
```

- `WorkerPool(worker_count, queue_size=0, task_timeout=None)`. A queue size of 0 gives
  room for twice as many tasks as there are workers. A worker count below 1 raises
  `ValueError`.
- `submit` blocks while the queue is full. It raises `PoolShutdownError` once the pool has
  been shut down.
- Each `Result` carries `task`, `error`, `duration` (in seconds) and `worker_id`.
  `get_result` raises `TimeoutError` when no result arrives in time, and
  `PoolShutdownError` once the pool has shut down with no results left. `results()` yields
  results until the pool has shut down.
- If a task runs past `task_timeout`, its context ends with `DeadlineExceeded`.
- A worker waits at most 0.1 s to deliver a result into the result queue, which holds one
  result per worker. If nobody reads the results, they are dropped rather than blocking
  the workers.
- `shutdown()` returns a `threading.Event` that is set once every worker has exited.
  `size()` and `queue_size()` report the worker count and the number of waiting tasks.
- The pool is a context manager; on exit it shuts down and waits for the workers.

## Scheduler

```python
from datetime import timedelta
from taskflow.scheduler import Scheduler, BackoffTask
from taskflow.workerpool import TaskFunc

scheduler = Scheduler()
scheduler.start()

task = TaskFunc(lambda ctx: print("tick"))
scheduler.schedule_after("once", task, timedelta(seconds=5))
scheduler.schedule_repeating("heartbeat", task, timedelta(minutes=1))
scheduler.schedule_cron("daily", "0 30 2 * * *", task)   # 02:30:00 every day

for info in scheduler.tasks():
    print(info.task_id, info.run_at)

scheduler.cancel("heartbeat")
scheduler.stop().wait()
```

`Scheduler(worker_pool=None, location=None, tick_interval=0.0, max_tasks=0)`:

- Without a pool, the scheduler creates its own pool of 4 workers and shuts it down on
  `stop()`.
- It checks for due tasks every 0.05 s by default.
- It holds at most 10,000 tasks by default.
- `location` sets the time zone in which cron expressions are matched.

Scheduling calls:

- `schedule` takes a `datetime`; a naive one is treated as local time.
- `schedule_after` and `schedule_repeating` take seconds or a `timedelta`.
- A repeating task runs first at the next tick.
- `tasks()` returns `TaskInfo` snapshots (`task_id`, `run_at`, `interval`, `created`),
  with the soonest first.
- `cancel` returns whether the task was scheduled. `cancel_all` removes every task.

Errors:

- `ValueError` for an empty task ID, a task ID longer than 255 characters, a missing task,
  a duplicate ID, or an interval that is not positive.
- `RuntimeError` when the scheduler is full, or when `start()` is called on a scheduler
  that is already running.
- `taskflow.cron.CronError`, a `ValueError`, for a cron expression that cannot be parsed.

The scheduler is also a context manager: it starts on entry, and on exit it stops and
waits.

To retry an unreliable task (delays are in seconds):

```python
resilient = BackoffTask(task, max_retries=5, initial_delay=0.01, max_delay=1.0)
```

The first attempt runs at once. After each failure the delay doubles, up to `max_delay`.
When every attempt fails, the last error is raised. If the context ends while a retry is
waiting, the context's error is raised instead. Delays of 0 or less fall back to 0.1 s
for the initial delay and 30 s for the maximum.

## Cron expressions

`parse_cron` accepts exactly six fields: second, minute, hour, day of month, month, and
day of week.

- A field may use `*` or `?`, lists (`1,15`), ranges (`MON-FRI`) and steps (`*/5`).
- Month and weekday names are accepted in any case.
- The expression may start with `TZ=Zone` or `CRON_TZ=Zone`.
- Descriptors such as `@hourly` are rejected.

`CronSchedule.next(after)` returns the first matching second strictly after `after`. It
returns `None` if nothing matches within five years.

## Pipeline

```python
from taskflow.pipeline import Pipeline
from taskflow.workerpool import background

pipeline = Pipeline()
pipeline.add_stage_func("uppercase", lambda ctx, value: value.upper())
pipeline.add_stage_func("prefix", lambda ctx, value: "PROCESSED: " + value)

result = pipeline.execute(background(), "hello world")
print(result.output)               # PROCESSED: HELLO WORLD
print(len(result.stage_results))   # 2
print(pipeline.stats().total_executions)
```

Errors:

- By default a run stops at the first failing stage. `execute` then raises
  `PipelineError`, whose `result` holds the partial `PipelineResult` and whose `error`
  holds the cause.
- With `PipelineConfig(stop_on_error=False)`, stage errors are recorded in the
  `stage_results` and the run continues with the last successful output.

Configuration:

- `PipelineConfig` also takes the callbacks `on_pipeline_start`, `on_stage_start`,
  `on_stage_complete`, `on_pipeline_complete` and `on_error`.
- `set_timeout(seconds)` bounds each run. A run that times out ends with
  `DeadlineExceeded`.
- `set_worker_pool(pool)` runs each stage as a task on a `WorkerPool`.

Running and inspecting:

- `execute_async` returns a `concurrent.futures.Future`, which resolves to the
  `PipelineResult` whether or not the run failed.
- `stages()` returns a copy of the stage list.
- `stats()` returns totals for the whole pipeline and a `StageStats` entry per stage.

## What this package does not do

Everything is held in memory inside one process. Scheduled tasks are not stored and do
not survive a restart. There is no command-line tool and no distributed execution.

## Running the tests

```
pip install ".[test]"
pytest
```