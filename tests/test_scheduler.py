import threading
import time
from datetime import datetime, timedelta

import pytest

from taskflow.cron import CronError
from taskflow.scheduler import BackoffTask, Scheduler, TaskInfo
from taskflow.workerpool import Cancelled, TaskFunc, WorkerPool, background


class Counter:
    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0

    def __call__(self, ctx):
        with self._lock:
            self.value += 1


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def scheduler():
    s = Scheduler()
    yield s
    assert s.stop().wait(5)


def test_basic_scheduling(scheduler):
    scheduler.start()
    counter = Counter()
    task = TaskFunc(counter)
    scheduler.schedule("test1", task, datetime.now())
    scheduler.schedule_after("test2", task, 0.05)
    assert wait_until(lambda: counter.value >= 2)
    time.sleep(0.1)
    assert counter.value == 2
    assert scheduler.tasks() == []


def test_repeating_task(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_repeating("repeat", TaskFunc(counter), 0.075)
    assert wait_until(lambda: counter.value >= 3, timeout=3.0)
    [info] = scheduler.tasks()
    assert info.task_id == "repeat"
    assert info.interval == pytest.approx(0.075)


def test_repeating_accepts_timedelta(scheduler):
    scheduler.schedule_repeating("td", Counter(), timedelta(seconds=2))
    assert scheduler.tasks()[0].interval == pytest.approx(2.0)


def test_cron_scheduling(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_cron("cron", "* * * * * *", TaskFunc(counter))
    assert wait_until(lambda: counter.value >= 1, timeout=2.5)
    infos = scheduler.tasks()
    assert [info.task_id for info in infos] == ["cron"]
    assert infos[0].interval == 0


def test_cron_run_time_matches_expression(scheduler):
    before = datetime.now().astimezone()
    scheduler.schedule_cron("backup", "0 30 2 * * *", TaskFunc(Counter()))
    [info] = scheduler.tasks()
    assert (info.run_at.hour, info.run_at.minute, info.run_at.second) == (2, 30, 0)
    assert info.run_at > before
    assert info.interval == 0


def test_cron_descriptor_rejected(scheduler):
    with pytest.raises(CronError):
        scheduler.schedule_cron("cleanup", "@hourly", TaskFunc(Counter()))
    assert scheduler.tasks() == []


def test_task_management(scheduler):
    task = TaskFunc(lambda ctx: None)
    later = datetime.now() + timedelta(hours=1)
    scheduler.schedule("dup", task, later)
    with pytest.raises(ValueError):
        scheduler.schedule("dup", task, later)
    assert len(scheduler.tasks()) == 1
    assert scheduler.cancel("dup") is True
    assert scheduler.cancel("nonexistent") is False
    assert scheduler.tasks() == []


def test_tasks_sorted_by_run_time(scheduler):
    now = datetime.now()
    task = TaskFunc(lambda ctx: None)
    scheduler.schedule("c", task, now + timedelta(hours=3))
    scheduler.schedule("a", task, now + timedelta(hours=1))
    scheduler.schedule("b", task, now + timedelta(hours=2))
    infos = scheduler.tasks()
    assert [info.task_id for info in infos] == ["a", "b", "c"]
    assert all(isinstance(info, TaskInfo) for info in infos)


def test_cancel_all(scheduler):
    task = TaskFunc(lambda ctx: None)
    scheduler.schedule_after("one", task, 60)
    scheduler.schedule_repeating("two", task, 60)
    scheduler.cancel_all()
    assert scheduler.tasks() == []


def test_max_tasks():
    s = Scheduler(max_tasks=1)
    try:
        task = TaskFunc(lambda ctx: None)
        s.schedule_after("first", task, 60)
        with pytest.raises(RuntimeError):
            s.schedule_after("second", task, 60)
        assert [info.task_id for info in s.tasks()] == ["first"]
    finally:
        s.stop().wait(5)


def test_start_twice_fails(scheduler):
    scheduler.start()
    with pytest.raises(RuntimeError):
        scheduler.start()


def test_failing_repeating_task_keeps_running(scheduler):
    scheduler.start()
    counter = Counter()

    def failing(ctx):
        counter(ctx)
        raise RuntimeError("boom")

    scheduler.schedule_repeating("fails", failing, 0.05)
    assert wait_until(lambda: counter.value >= 3, timeout=3.0)
    infos = scheduler.tasks()
    assert [info.task_id for info in infos] == ["fails"]
    assert infos[0].interval == pytest.approx(0.05)


def test_context_manager_runs_tasks():
    counter = Counter()
    with Scheduler(tick_interval=0.01) as s:
        s.schedule_after("ctx", counter, 0.02)
        assert [info.task_id for info in s.tasks()] == ["ctx"]
        assert wait_until(lambda: counter.value == 1)
        assert s.tasks() == []


def test_supplied_pool_left_running():
    pool = WorkerPool(1, 5)
    try:
        s = Scheduler(worker_pool=pool)
        s.start()
        assert s.stop().wait(5)
        pool.submit(lambda ctx: None)
        assert pool.get_result(timeout=2).error is None
    finally:
        pool.shutdown().wait(5)


@pytest.mark.parametrize(
    "call",
    [
        lambda s, t: s.schedule("", t, datetime.now()),
        lambda s, t: s.schedule("test", None, datetime.now()),
        lambda s, t: s.schedule("test", t, None),
        lambda s, t: s.schedule("x" * 256, t, datetime.now()),
        lambda s, t: s.schedule_repeating("test", t, -1),
        lambda s, t: s.schedule_repeating("test", t, 0),
        lambda s, t: s.schedule_cron("test", "", t),
        lambda s, t: s.schedule_cron("test", "invalid", t),
    ],
    ids=[
        "empty id",
        "none task",
        "no run time",
        "long id",
        "negative interval",
        "zero interval",
        "empty cron",
        "invalid cron",
    ],
)
def test_input_validation(scheduler, call):
    with pytest.raises(ValueError):
        call(scheduler, TaskFunc(lambda ctx: None))
    assert scheduler.tasks() == []


def test_backoff_task_succeeds_after_retries():
    attempts = []

    def flaky(ctx):
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("temporary failure")

    task = BackoffTask(TaskFunc(flaky), max_retries=5, initial_delay=0.01, max_delay=0.1)
    assert task.execute(background()) is None
    assert len(attempts) == 3


def test_backoff_task_raises_last_error():
    attempts = []

    def always_fails(ctx):
        attempts.append(1)
        raise RuntimeError(f"failure {len(attempts)}")

    task = BackoffTask(always_fails, max_retries=2, initial_delay=0.01, max_delay=0.02)
    with pytest.raises(RuntimeError, match="failure 3"):
        task.execute(background())
    assert len(attempts) == 3


def test_backoff_task_stops_on_cancelled_context():
    attempts = []

    def always_fails(ctx):
        attempts.append(1)
        raise RuntimeError("failure")

    ctx = background()
    ctx.cancel()
    with pytest.raises(Cancelled):
        BackoffTask(always_fails, max_retries=3, initial_delay=0.01).execute(ctx)
    assert len(attempts) == 1


@pytest.mark.parametrize(
    "task",
    [BackoffTask(None), BackoffTask(TaskFunc(lambda ctx: None), max_retries=-1)],
)
def test_backoff_task_validation(task):
    with pytest.raises(ValueError):
        task.execute(background())


def test_backoff_task_runs_in_scheduler(scheduler):
    scheduler.start()
    counter = Counter()
    scheduler.schedule_after("api-call", BackoffTask(counter, max_retries=3), 0.001)
    assert wait_until(lambda: counter.value == 1)
    assert scheduler.tasks() == []