"""Run a value through a sequence of named stages, optionally on a worker pool."""

from __future__ import annotations

import dataclasses
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .workerpool import Context, PoolShutdownError, TaskFunc, WorkerPool, background

_POLL = 0.005

StageFn = Callable[[Context, Any], Any]


class PipelineError(Exception):
    """Raised by :meth:`Pipeline.execute` when a run ends with an error.

    ``result`` holds everything the run produced and ``error`` the cause.
    """

    def __init__(self, result: "PipelineResult") -> None:
        super().__init__(str(result.error))
        self.result = result
        self.error = result.error


class Stage(ABC):
    """One processing step; ``name`` identifies it in results and statistics."""

    name: str

    @abstractmethod
    def execute(self, ctx: Context, value: Any) -> Any:
        """Process ``value`` and return the output; raise to report failure."""


class StageFunc(Stage):
    """A stage made from a function taking a context and a value."""

    def __init__(self, name: str, fn: StageFn) -> None:
        self.name = name
        self.fn = fn

    def execute(self, ctx: Context, value: Any) -> Any:
        return self.fn(ctx, value)

    def __repr__(self) -> str:
        return f"StageFunc({self.name!r})"


@dataclass
class StageResult:
    """The outcome of one stage in one run."""

    stage_name: str
    input: Any
    output: Any
    error: Optional[BaseException]
    duration: float
    start_time: datetime
    end_time: datetime


@dataclass
class PipelineResult:
    """The outcome of one pipeline run."""

    input: Any
    start_time: datetime
    output: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0
    stage_results: list[StageResult] = field(default_factory=list)
    end_time: Optional[datetime] = None


@dataclass
class StageStats:
    """Accumulated figures for one stage."""

    name: str
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration: float = 0.0
    average_duration: float = 0.0


@dataclass
class Stats:
    """Accumulated figures for a pipeline."""

    total_executions: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    total_duration: float = 0.0
    average_duration: float = 0.0
    stage_stats: dict[str, StageStats] = field(default_factory=dict)
    last_execution_at: Optional[datetime] = None


@dataclass
class PipelineConfig:
    """Options for a pipeline; a timeout of 0 means none."""

    worker_pool: Optional[WorkerPool] = None
    timeout: float = 0.0
    on_stage_start: Optional[Callable[[str, Any], None]] = None
    on_stage_complete: Optional[Callable[[StageResult], None]] = None
    on_pipeline_start: Optional[Callable[[Any], None]] = None
    on_pipeline_complete: Optional[Callable[[PipelineResult], None]] = None
    on_error: Optional[Callable[[str, BaseException], None]] = None
    stop_on_error: bool = True


class Pipeline:
    """An ordered list of stages; each stage's output feeds the next."""

    def __init__(self, config: Optional[PipelineConfig] = None) -> None:
        self._config = dataclasses.replace(config) if config is not None else PipelineConfig()
        self._stages: list[Stage] = []
        self._stats = Stats()
        self._lock = threading.Lock()

    def add_stage(self, stage: Stage) -> "Pipeline":
        """Append a stage; returns the pipeline for chaining."""
        with self._lock:
            self._stages.append(stage)
            self._stats.stage_stats.setdefault(stage.name, StageStats(stage.name))
        return self

    def add_stage_func(self, name: str, fn: StageFn) -> "Pipeline":
        """Append a stage made from a function."""
        return self.add_stage(StageFunc(name, fn))

    def set_worker_pool(self, pool: Optional[WorkerPool]) -> "Pipeline":
        """Run stages on ``pool`` from now on."""
        with self._lock:
            self._config.worker_pool = pool
        return self

    def set_timeout(self, timeout: float) -> "Pipeline":
        """Limit each run to ``timeout`` seconds."""
        with self._lock:
            self._config.timeout = timeout
        return self

    def stages(self) -> list[Stage]:
        """A copy of the stage list."""
        with self._lock:
            return list(self._stages)

    def stats(self) -> Stats:
        """A snapshot of the accumulated statistics."""
        with self._lock:
            snapshot = dataclasses.replace(
                self._stats,
                stage_stats={
                    name: dataclasses.replace(stats)
                    for name, stats in self._stats.stage_stats.items()
                },
            )
        if snapshot.total_executions > 0:
            snapshot.average_duration = snapshot.total_duration / snapshot.total_executions
        return snapshot

    def execute(self, ctx: Optional[Context], value: Any) -> PipelineResult:
        """Run the pipeline; raise :class:`PipelineError` if the run fails."""
        result = self._run(ctx, value)
        if result.error is not None:
            raise PipelineError(result) from result.error
        return result

    def execute_async(self, ctx: Optional[Context], value: Any) -> "Future[PipelineResult]":
        """Run the pipeline in a thread; the future yields the result, errors included."""
        future: Future[PipelineResult] = Future()

        def work() -> None:
            try:
                future.set_result(self._run(ctx, value))
            except BaseException as exc:
                future.set_exception(exc)

        threading.Thread(target=work, daemon=True, name="pipeline").start()
        return future

    def _run(self, ctx: Optional[Context], value: Any) -> PipelineResult:
        with self._lock:
            stages = list(self._stages)
            config = dataclasses.replace(self._config)

        started = time.perf_counter()
        result = PipelineResult(input=value, start_time=datetime.now())
        if config.on_pipeline_start is not None:
            config.on_pipeline_start(value)

        ctx = ctx if ctx is not None else background()
        run_ctx = ctx.with_timeout(config.timeout) if config.timeout > 0 else ctx
        try:
            output, error = self._run_stages(run_ctx, value, stages, config, result)
        finally:
            if run_ctx is not ctx:
                run_ctx.cancel()

        result.output = output
        result.error = error
        result.end_time = datetime.now()
        result.duration = time.perf_counter() - started
        self._record_run(result)

        if config.on_pipeline_complete is not None:
            config.on_pipeline_complete(result)
        return result

    def _run_stages(
        self,
        ctx: Context,
        value: Any,
        stages: list[Stage],
        config: PipelineConfig,
        result: PipelineResult,
    ) -> tuple[Any, Optional[BaseException]]:
        current = value
        for stage in stages:
            if ctx.error is not None:
                return current, ctx.error
            stage_result = self._run_stage(ctx, stage, current, config)
            result.stage_results.append(stage_result)
            if stage_result.error is None:
                current = stage_result.output
                continue
            if config.on_error is not None:
                config.on_error(stage.name, stage_result.error)
            if config.stop_on_error:
                return current, stage_result.error
        return current, None

    def _run_stage(
        self, ctx: Context, stage: Stage, value: Any, config: PipelineConfig
    ) -> StageResult:
        start_time = datetime.now()
        started = time.perf_counter()
        if config.on_stage_start is not None:
            config.on_stage_start(stage.name, value)

        error: Optional[BaseException] = None
        try:
            if config.worker_pool is not None:
                output = self._run_in_pool(ctx, stage, value, config.worker_pool)
            else:
                output = stage.execute(ctx, value)
        except Exception as exc:
            output, error = value, exc

        stage_result = StageResult(
            stage_name=stage.name,
            input=value,
            output=output,
            error=error,
            duration=time.perf_counter() - started,
            start_time=start_time,
            end_time=datetime.now(),
        )
        self._record_stage(stage_result)
        if config.on_stage_complete is not None:
            config.on_stage_complete(stage_result)
        return stage_result

    @staticmethod
    def _run_in_pool(ctx: Context, stage: Stage, value: Any, pool: WorkerPool) -> Any:
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def run(task_ctx: Context) -> None:
            try:
                outcome["value"] = stage.execute(task_ctx, value)
            except Exception as exc:
                outcome["error"] = exc
                raise
            finally:
                done.set()

        try:
            pool.submit(TaskFunc(run))
        except PoolShutdownError as exc:
            raise PoolShutdownError(
                f"failed to submit stage {stage.name} to worker pool: {exc}"
            ) from exc

        while not done.wait(_POLL):
            ctx.raise_if_done()
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")

    def _record_run(self, result: PipelineResult) -> None:
        with self._lock:
            stats = self._stats
            stats.total_executions += 1
            stats.total_duration += result.duration
            stats.last_execution_at = result.end_time
            if result.error is None:
                stats.successful_runs += 1
            else:
                stats.failed_runs += 1

    def _record_stage(self, result: StageResult) -> None:
        with self._lock:
            stats = self._stats.stage_stats.setdefault(
                result.stage_name, StageStats(result.stage_name)
            )
            stats.execution_count += 1
            stats.total_duration += result.duration
            if result.error is None:
                stats.success_count += 1
            else:
                stats.error_count += 1
            stats.average_duration = stats.total_duration / stats.execution_count