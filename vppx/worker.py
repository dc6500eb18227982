from __future__ import annotations

import heapq
import itertools
import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable, Protocol
from uuid import uuid4

from .actions import ActionResult, ObservabilitySink, dispatch
from .config import RetryConfig, load_app_config
from .engine import RuleEngine, RuleRateLimiter, build_rule_engine_from_config
from .errors import (
    QueueFullError,
    RiskRejection,
    StrategyNotActiveError,
    TaskNotFoundError,
    TaskStateError,
    TerminalExecutionFailure,
    TransientExecutionFailure,
)
from .events import (
    EVENT_EXECUTION_CANCELLED,
    EVENT_EXECUTION_COMPLETED,
    EVENT_EXECUTION_FAILED,
    EVENT_EXECUTION_REJECTED,
    EventChannel,
    event_channel,
)
from .models import Action, ContextSnapshot, RetryPolicy, Strategy
from .risk import RiskEvent, RiskGate, build_risk_gate_from_config


UTC = timezone.utc
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
REASON_RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
REASON_ENGINE_STOPPED = "ENGINE_STOPPED"
REASON_CANCELLED = "CANCELLED"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _to_iso_utc(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


class StrategySource(Protocol):
    def get(self, strategy_id: str) -> Strategy:
        ...


class ExecutionLogSink(Protocol):
    def append(self, record: dict[str, Any]) -> None:
        ...


@dataclass
class ExecutionTask:
    task_id: str
    strategy_id: str
    snapshot: ContextSnapshot
    priority: int
    max_attempts: int
    backoff_delay_ms: int
    created_at: datetime
    scheduled_at: datetime | None = None
    strategy_version: int | None = None
    status: str = "pending"
    attempts: int = 0
    reason_code: str | None = None
    error: str | None = None
    error_chain: list[dict[str, Any]] = field(default_factory=list)
    results: list[ActionResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failure: TerminalExecutionFailure | None = field(default=None, repr=False, compare=False)
    done: Event = field(default_factory=Event, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "priority" and "priority" in self.__dict__:
            raise AttributeError("task priority is immutable after admission")
        super().__setattr__(name, value)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_ready(self, now: datetime) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= now

    def to_record(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "strategy_id": self.strategy_id,
            "strategy_version": self.strategy_version,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "backoff_delay_ms": self.backoff_delay_ms,
            "reason_code": self.reason_code,
            "error": self.error,
            "error_chain": list(self.error_chain),
            "results": [result.to_record() for result in self.results],
            "snapshot": self.snapshot.model_dump(mode="json"),
            "scheduled_at": _to_iso_utc(self.scheduled_at),
            "created_at": _to_iso_utc(self.created_at),
            "started_at": _to_iso_utc(self.started_at),
            "finished_at": _to_iso_utc(self.finished_at),
        }


class ExecutionTaskQueue:
    """Pending tasks ordered by (priority desc, enqueue order asc).

    ``pop_ready`` passes over deferred entries so a future-dated head never
    holds back ready tasks behind it.
    """

    def __init__(self, *, maxsize: int) -> None:
        self._maxsize = int(maxsize)
        self._heap: list[tuple[int, int, str]] = []
        self._tasks: dict[str, ExecutionTask] = {}
        self._seq = itertools.count()
        self._lock = Lock()

    def push(self, task: ExecutionTask) -> None:
        with self._lock:
            if len(self._tasks) >= self._maxsize:
                raise QueueFullError(f"execution queue is full (maxsize={self._maxsize})")
            self._tasks[task.task_id] = task
            heapq.heappush(self._heap, (-task.priority, next(self._seq), task.task_id))

    def pop_ready(self, now: datetime) -> ExecutionTask | None:
        with self._lock:
            skipped: list[tuple[int, int, str]] = []
            found: ExecutionTask | None = None
            while self._heap:
                entry = heapq.heappop(self._heap)
                task = self._tasks.get(entry[2])
                if task is None:
                    # removed by cancel
                    continue
                if not task.is_ready(now):
                    skipped.append(entry)
                    continue
                del self._tasks[task.task_id]
                found = task
                break
            for entry in skipped:
                heapq.heappush(self._heap, entry)
            return found

    def remove(self, task_id: str) -> ExecutionTask | None:
        with self._lock:
            return self._tasks.pop(task_id, None)

    def next_scheduled_at(self) -> datetime | None:
        with self._lock:
            times = [task.scheduled_at for task in self._tasks.values() if task.scheduled_at is not None]
        return min(times) if times else None

    def qsize(self) -> int:
        with self._lock:
            return len(self._tasks)

    def maxsize(self) -> int:
        return self._maxsize


def resolve_retry_policy(
    strategy: Strategy,
    *,
    defaults: RetryConfig,
    max_attempts: int | None = None,
    backoff_delay_ms: int | None = None,
) -> RetryPolicy:
    """Submit override, else the strictest action-level policy, else config."""
    declared = strategy.declared_retry_policies()
    if declared:
        base_attempts = min(policy.max_attempts for policy in declared)
        base_backoff = max(policy.backoff_delay_ms for policy in declared)
    else:
        base_attempts = defaults.max_attempts
        base_backoff = defaults.backoff_delay_ms
    return RetryPolicy(
        max_attempts=max_attempts if max_attempts is not None else base_attempts,
        backoff_delay_ms=backoff_delay_ms if backoff_delay_ms is not None else base_backoff,
    )


DispatchFn = Callable[..., ActionResult]
RiskEventRecorder = Callable[[list[RiskEvent]], Any]


class StrategyExecutionEngine:
    def __init__(
        self,
        *,
        strategies: StrategySource,
        risk_gate: RiskGate,
        rule_engine: RuleEngine | None = None,
        execution_log: ExecutionLogSink | None = None,
        channel: EventChannel | None = None,
        enabled: bool = False,
        max_concurrent_executions: int = 10,
        queue_maxsize: int = 4096,
        scheduler_poll_seconds: float = 1.0,
        risk_sweep_interval_seconds: float = 5.0,
        archive_size: int = 1000,
        retry_defaults: RetryConfig | None = None,
        dispatch_fn: DispatchFn | None = None,
        sink: ObservabilitySink | None = None,
        risk_event_recorder: RiskEventRecorder | None = None,
    ) -> None:
        self._logger = logging.getLogger("vppx.worker")
        self._strategies = strategies
        self._risk_gate = risk_gate
        self._rule_engine = rule_engine or RuleEngine()
        self._execution_log = execution_log
        self._channel = channel if channel is not None else event_channel
        self._enabled = enabled
        self._max_concurrent = max(1, int(max_concurrent_executions))
        self._queue = ExecutionTaskQueue(maxsize=queue_maxsize)
        self._poll_seconds = float(scheduler_poll_seconds)
        self._risk_sweep_interval_seconds = float(risk_sweep_interval_seconds)
        self._archive_size = max(1, int(archive_size))
        self._retry_defaults = retry_defaults or RetryConfig(max_attempts=3, backoff_delay_ms=5000)
        self._dispatch_fn = dispatch_fn or dispatch
        self._sink = sink
        self._risk_event_recorder = risk_event_recorder
        self._rate_limiter = RuleRateLimiter()

        self._schedule_lock = Lock()
        self._state_lock = Lock()
        self._start_lock = Lock()
        self._stop_event = Event()
        self._wake_event = Event()
        self._idle_event = Event()
        self._idle_event.set()
        self._running = False
        self._scheduler_thread: Thread | None = None
        self._risk_thread: Thread | None = None
        self._worker_pool: ThreadPoolExecutor | None = None
        self._dispatch_pool: ThreadPoolExecutor | None = None

        self._live: dict[str, ExecutionTask] = {}
        self._archive: OrderedDict[str, ExecutionTask] = OrderedDict()
        self._running_count = 0
        self._max_observed_running = 0
        self._counters: dict[str, int] = {
            "submitted": 0,
            "rejected": 0,
            "started": 0,
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "retries": 0,
            "timeouts": 0,
        }

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def running(self) -> bool:
        return self._running

    @property
    def risk_gate(self) -> RiskGate:
        return self._risk_gate

    @property
    def rule_engine(self) -> RuleEngine:
        return self._rule_engine

    def runtime_status(self) -> dict[str, Any]:
        scheduler = self._scheduler_thread
        with self._state_lock:
            running_tasks = self._running_count
            max_observed = self._max_observed_running
            counters = dict(self._counters)
            archived = len(self._archive)
        return {
            "enabled": bool(self._enabled),
            "running": bool(self._running),
            "scheduler_alive": bool(scheduler is not None and scheduler.is_alive()),
            "configured_slots": self._max_concurrent,
            "running_tasks": running_tasks,
            "max_observed_running": max_observed,
            "queue_length": self._queue.qsize(),
            "queue_maxsize": self._queue.maxsize(),
            "archived_tasks": archived,
            "counters": counters,
            "engine_metrics": self._rule_engine.metrics(),
        }

    # -- lifecycle ----------------------------------------------------------------

    def start_if_enabled(self) -> None:
        if self._enabled:
            self.start()
        else:
            self._logger.info("strategy execution engine disabled (execution.enabled=false)")

    def _ensure_pools(self) -> None:
        if self._worker_pool is None:
            self._worker_pool = ThreadPoolExecutor(
                max_workers=self._max_concurrent, thread_name_prefix="vppx-exec"
            )
        if self._dispatch_pool is None:
            self._dispatch_pool = ThreadPoolExecutor(
                max_workers=self._max_concurrent * 2, thread_name_prefix="vppx-dispatch"
            )

    def start(self) -> None:
        with self._start_lock:
            if self._running:
                return
            self._stop_event.clear()
            self._ensure_pools()
            self._scheduler_thread = Thread(
                target=self._scheduler_loop,
                name="vppx-execution-scheduler",
                daemon=True,
            )
            self._risk_thread = Thread(
                target=self._risk_sweep_loop,
                name="vppx-risk-sweep",
                daemon=True,
            )
            self._scheduler_thread.start()
            self._risk_thread.start()
            self._running = True
            self._logger.info(
                "strategy execution engine started slots=%s poll=%ss",
                self._max_concurrent,
                self._poll_seconds,
            )

    def stop(self, timeout_seconds: float = 10.0) -> None:
        with self._start_lock:
            if not self._running:
                return
            self._stop_event.set()
            self._wake_event.set()
            scheduler = self._scheduler_thread
            risk_thread = self._risk_thread
            self._scheduler_thread = None
            self._risk_thread = None
            self._running = False

        if scheduler is not None:
            scheduler.join(timeout=timeout_seconds)
        if risk_thread is not None:
            risk_thread.join(timeout=timeout_seconds)
        self.shutdown_pools()
        self._logger.info("strategy execution engine stopped")

    def shutdown_pools(self) -> None:
        worker_pool, dispatch_pool = self._worker_pool, self._dispatch_pool
        self._worker_pool = None
        self._dispatch_pool = None
        if worker_pool is not None:
            worker_pool.shutdown(wait=True)
        if dispatch_pool is not None:
            dispatch_pool.shutdown(wait=False)

    # -- admission ----------------------------------------------------------------

    def submit(
        self,
        strategy_id: str,
        snapshot: ContextSnapshot,
        *,
        priority: int = 0,
        scheduled_at: datetime | None = None,
        max_attempts: int | None = None,
        backoff_delay_ms: int | None = None,
        now: datetime | None = None,
    ) -> ExecutionTask:
        """Admit one task through the risk gate.

        Raises ``StrategyNotActiveError`` for non-active strategies,
        ``RiskRejection`` (carrying the failed task) when the gate blocks, and
        ``QueueFullError`` when there is no room.
        """
        strategy = self._strategies.get(strategy_id)
        if strategy.status != "active":
            raise StrategyNotActiveError(
                f"strategy {strategy_id} is {strategy.status}; only active strategies accept tasks"
            )
        policy = resolve_retry_policy(
            strategy,
            defaults=self._retry_defaults,
            max_attempts=max_attempts,
            backoff_delay_ms=backoff_delay_ms,
        )
        created_at = _to_utc(now or _utcnow())
        task = ExecutionTask(
            task_id=uuid4().hex,
            strategy_id=strategy.id,
            strategy_version=strategy.version,
            snapshot=snapshot,
            priority=int(priority),
            scheduled_at=_to_utc(scheduled_at) if scheduled_at is not None else None,
            max_attempts=policy.max_attempts,
            backoff_delay_ms=policy.backoff_delay_ms,
            created_at=created_at,
        )

        with self._schedule_lock:
            decision = self._risk_gate.check(now=created_at, overrides=strategy.risk)
            if not decision.passed:
                task.status = "failed"
                task.reason_code = decision.reason_code
                task.error = decision.reason
                self._bump("rejected")
                self._finalize(task, created_at)
                self._logger.info(
                    "task rejected by risk gate strategy_id=%s task_id=%s reason=%s",
                    strategy.id,
                    task.task_id,
                    decision.reason_code,
                )
                raise RiskRejection(str(decision.reason_code), str(decision.reason), task)
            self._queue.push(task)
            with self._state_lock:
                self._live[task.task_id] = task
                self._counters["submitted"] += 1
                self._idle_event.clear()
        self._wake_event.set()
        return task

    def cancel(self, task_id: str) -> ExecutionTask:
        with self._schedule_lock:
            with self._state_lock:
                task = self._live.get(task_id) or self._archive.get(task_id)
            if task is None:
                raise TaskNotFoundError(f"task {task_id} not found")
            if task.status != "pending":
                raise TaskStateError(f"task {task_id} is {task.status}; only pending tasks can be cancelled")
            self._queue.remove(task_id)
            task.status = "cancelled"
            task.reason_code = REASON_CANCELLED
            self._bump("cancelled")
            self._finalize(task, _utcnow())
        return task

    # -- scheduling ---------------------------------------------------------------

    def schedule_once(self, now: datetime | None = None) -> int:
        """One serialized scheduling pass; returns the number of tasks started."""
        started = 0
        with self._schedule_lock:
            self._ensure_pools()
            assert self._worker_pool is not None
            current = _to_utc(now or _utcnow())
            while True:
                with self._state_lock:
                    if self._running_count >= self._max_concurrent:
                        break
                task = self._queue.pop_ready(current)
                if task is None:
                    break
                with self._state_lock:
                    self._running_count += 1
                    self._max_observed_running = max(self._max_observed_running, self._running_count)
                    self._counters["started"] += 1
                task.status = "running"
                task.started_at = _utcnow()
                self._worker_pool.submit(self._run_task, task)
                started += 1
        return started

    def _scheduler_loop(self) -> None:
        self._logger.info("scheduler loop started")
        while not self._stop_event.is_set():
            try:
                self.schedule_once()
            except Exception:
                self._logger.exception("scheduler pass failed")
            timeout = self._poll_seconds
            next_at = self._queue.next_scheduled_at()
            if next_at is not None:
                until = (next_at - _utcnow()).total_seconds()
                timeout = min(timeout, max(0.01, until))
            self._wake_event.wait(timeout=timeout)
            self._wake_event.clear()
        self._logger.info("scheduler loop stopped")

    def _risk_sweep_loop(self) -> None:
        self._logger.info("risk sweep loop started")
        while not self._stop_event.is_set():
            try:
                self.sweep_risk()
            except Exception:
                self._logger.exception("risk sweep failed")
            if self._stop_event.wait(timeout=self._risk_sweep_interval_seconds):
                break
        self._logger.info("risk sweep loop stopped")

    def sweep_risk(self, now: datetime | None = None) -> list[RiskEvent]:
        with self._schedule_lock:
            risk_events = self._risk_gate.sweep(now)
        if risk_events and self._risk_event_recorder is not None:
            self._risk_event_recorder(risk_events)
        return risk_events

    # -- execution ----------------------------------------------------------------

    def _dispatch_with_timeout(
        self,
        action: Action,
        snapshot: ContextSnapshot,
        *,
        strategy_id: str | None = None,
        rule_id: str | None = None,
    ) -> ActionResult:
        pool = self._dispatch_pool
        if pool is None:
            raise TransientExecutionFailure("dispatch pool is not running")
        future = pool.submit(
            self._dispatch_fn,
            action,
            snapshot,
            strategy_id=strategy_id,
            rule_id=rule_id,
            sink=self._sink,
        )
        timeout_seconds = action.timeout_ms / 1000.0
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            self._bump("timeouts")
            raise TransientExecutionFailure(
                f"action {action.type} timed out after {action.timeout_ms}ms (rule={rule_id})"
            ) from exc
        except Exception as exc:
            raise TransientExecutionFailure(
                f"action {action.type} failed (rule={rule_id}): {exc}"
            ) from exc

    def _run_task(self, task: ExecutionTask) -> None:
        try:
            self._execute_with_retries(task)
        except Exception as exc:
            self._logger.exception("task crashed task_id=%s strategy_id=%s", task.task_id, task.strategy_id)
            task.status = "failed"
            task.error = str(exc) or exc.__class__.__name__
            self._bump("failed")
            self._finalize(task, _utcnow())
        finally:
            with self._state_lock:
                self._running_count -= 1
                if self._running_count == 0 and not self._live:
                    self._idle_event.set()
            self._wake_event.set()

    def _execute_with_retries(self, task: ExecutionTask) -> None:
        strategy = self._strategies.get(task.strategy_id)
        while True:
            task.attempts += 1
            try:
                result = self._rule_engine.execute_strategy(
                    strategy,
                    task.snapshot,
                    rate_limiter=self._rate_limiter,
                    dispatcher=self._dispatch_with_timeout,
                )
            except Exception as exc:
                task.error_chain.append(
                    {
                        "attempt": task.attempts,
                        "error_type": exc.__class__.__name__,
                        "message": str(exc),
                        "cause": repr(exc.__cause__) if exc.__cause__ is not None else None,
                        "at": _to_iso_utc(_utcnow()),
                    }
                )
                self._logger.warning(
                    "task attempt failed task_id=%s attempt=%s/%s error=%s",
                    task.task_id,
                    task.attempts,
                    task.max_attempts,
                    exc,
                )
                if task.attempts >= task.max_attempts:
                    message = f"retries exhausted after {task.attempts} attempts: {exc}"
                    task.status = "failed"
                    task.reason_code = REASON_RETRIES_EXHAUSTED
                    task.error = message
                    task.failure = TerminalExecutionFailure(message, task.error_chain)
                    self._bump("failed")
                    self._finalize(task, _utcnow())
                    return
                self._bump("retries")
                if self._stop_event.wait(timeout=task.backoff_delay_ms / 1000.0):
                    task.status = "failed"
                    task.reason_code = REASON_ENGINE_STOPPED
                    task.error = f"engine stopped during retry backoff: {exc}"
                    self._bump("failed")
                    self._finalize(task, _utcnow())
                    return
                continue

            task.results = list(result.actions)
            task.status = "completed"
            self._bump("completed")
            self._finalize(task, _utcnow())
            return

    def _finalize(self, task: ExecutionTask, finished_at: datetime) -> None:
        task.finished_at = finished_at
        with self._state_lock:
            self._live.pop(task.task_id, None)
            self._archive[task.task_id] = task
            while len(self._archive) > self._archive_size:
                self._archive.popitem(last=False)
            if self._running_count == 0 and not self._live:
                self._idle_event.set()
        record = task.to_record()
        if self._execution_log is not None:
            try:
                self._execution_log.append(record)
            except Exception:
                self._logger.exception("execution log append failed task_id=%s", task.task_id)
        event_type = {
            "completed": EVENT_EXECUTION_COMPLETED,
            "cancelled": EVENT_EXECUTION_CANCELLED,
        }.get(task.status, EVENT_EXECUTION_FAILED)
        if task.status == "failed" and task.started_at is None:
            event_type = EVENT_EXECUTION_REJECTED
        self._channel.publish(
            event_type,
            task.error or f"task {task.status}",
            strategy_id=task.strategy_id,
            task_id=task.task_id,
            payload={
                "status": task.status,
                "attempts": task.attempts,
                "reason_code": task.reason_code,
                "results": record["results"],
                "error_chain": record["error_chain"],
            },
            timestamp=finished_at,
        )
        task.done.set()

    def _bump(self, key: str) -> None:
        with self._state_lock:
            self._counters[key] = self._counters.get(key, 0) + 1

    # -- inspection ---------------------------------------------------------------

    def get_task(self, task_id: str) -> ExecutionTask:
        with self._state_lock:
            task = self._live.get(task_id) or self._archive.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"task {task_id} not found")
        return task

    def list_tasks(self, *, status: str | None = None, strategy_id: str | None = None) -> list[ExecutionTask]:
        with self._state_lock:
            tasks = list(self._live.values()) + list(self._archive.values())
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        if strategy_id is not None:
            tasks = [task for task in tasks if task.strategy_id == strategy_id]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks

    def wait_for(
        self,
        task_id: str,
        timeout: float | None = None,
        *,
        raise_on_failure: bool = False,
    ) -> ExecutionTask:
        task = self.get_task(task_id)
        if not task.done.wait(timeout=timeout):
            raise TimeoutError(f"task {task_id} still {task.status} after {timeout}s")
        if raise_on_failure and task.failure is not None:
            raise task.failure
        return task

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._idle_event.wait(timeout=timeout)


def build_execution_engine_from_config() -> StrategyExecutionEngine:
    from .store import execution_log, strategy_store

    cfg = load_app_config()
    return StrategyExecutionEngine(
        strategies=strategy_store,
        risk_gate=build_risk_gate_from_config(),
        rule_engine=build_rule_engine_from_config(),
        execution_log=execution_log,
        enabled=cfg.execution.enabled,
        max_concurrent_executions=cfg.execution.max_concurrent_executions,
        queue_maxsize=cfg.execution.queue_maxsize,
        scheduler_poll_seconds=cfg.execution.scheduler_poll_seconds,
        risk_sweep_interval_seconds=cfg.execution.risk_sweep_interval_seconds,
        archive_size=cfg.execution.archive_size,
        retry_defaults=cfg.retry,
        risk_event_recorder=strategy_store.record_risk_events,
    )


worker_engine = build_execution_engine_from_config()
