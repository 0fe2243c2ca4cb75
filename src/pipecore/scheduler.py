# scheduler.py
"""
Event-driven execution of a PipelineGraph.

Per job: Pending -> Blocked -> Ready -> Running -> {Success, Failure},
or Skipped / Cancelled without running. The scheduler thread owns the
PipelineRun; worker threads only run executors and report back through a
queue, so every result is recorded before any dependent is looked at.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .contracts import ContractRegistry, default_registry
from .dag import PipelineGraph
from .errors import EngineFault, UnresolvedReferenceError
from .executors.base import ExecutionContext, JobExecutor
from .expressions import UNSET, EvaluationScope, evaluate_guard, evaluate_value, is_template, runs_when_cancelled
from .model import JobKind, JobResult, JobSpec, JobStatus, PipelineContext, PipelineRun, utcnow

logger = logging.getLogger(__name__)

EventListener = Callable[[str, str], None]


class InputError(Exception):
    """An input or secret could not be resolved to a usable value."""


class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCESS, JobState.FAILURE, JobState.SKIPPED, JobState.CANCELLED)


class RunHandle:
    """Lets another thread cancel a run in progress."""

    def __init__(self) -> None:
        self.cancel_event = threading.Event()
        self._events: Optional[queue.Queue] = None
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        with self._lock:
            self.cancel_event.set()
            if self._events is not None:
                self._events.put(("cancel", None, None))

    def _attach(self, events: queue.Queue) -> None:
        with self._lock:
            self._events = events
            if self.cancel_event.is_set():
                events.put(("cancel", None, None))


@dataclass
class _Running:
    future: Future
    stop: threading.Event
    deadline: Optional[float]
    timeout: Optional[float]
    started_at: Any = field(default_factory=utcnow)
    cancel_seen: bool = False


def _invoke(executor: JobExecutor, inputs: Dict[str, Any], secrets: Dict[str, str], ctx: ExecutionContext) -> JobResult:
    result = executor.execute(inputs, secrets, ctx)
    if not isinstance(result, JobResult):
        raise TypeError(f"{type(executor).__name__}.execute returned {type(result).__name__}, not JobResult")
    return result


class Scheduler:
    def __init__(
        self,
        executors: Mapping[JobKind, JobExecutor],
        *,
        max_workers: int = 4,
        default_timeout: Optional[float] = None,
        registry: Optional[ContractRegistry] = None,
        on_event: Optional[EventListener] = None,
    ):
        self.executors = dict(executors)
        self.max_workers = max(1, int(max_workers))
        self.default_timeout = default_timeout
        self.registry = registry or default_registry()
        self.on_event = on_event

    def run(
        self,
        graph: PipelineGraph,
        context: Optional[PipelineContext] = None,
        secrets: Optional[Mapping[str, str]] = None,
        *,
        approvals: Iterable[str] = (),
        handle: Optional[RunHandle] = None,
    ) -> PipelineRun:
        return _RunState(
            self,
            graph,
            context or PipelineContext(),
            dict(secrets or {}),
            frozenset(approvals),
            handle or RunHandle(),
        ).execute()


class _RunState:
    """Book-keeping for one call of Scheduler.run."""

    def __init__(
        self,
        scheduler: Scheduler,
        graph: PipelineGraph,
        context: PipelineContext,
        secrets: Dict[str, str],
        approvals: frozenset,
        handle: RunHandle,
    ):
        self.s = scheduler
        self.graph = graph
        self.context = context
        self.secrets = secrets
        self.approvals = approvals
        self.handle = handle
        self.events: queue.Queue = queue.Queue()
        self.states: Dict[str, JobState] = {n: JobState.PENDING for n in graph.order}
        self.running: Dict[str, _Running] = {}
        self.abandoned = False
        self.pool: Optional[ThreadPoolExecutor] = None

        run_id = context.run_id or uuid.uuid4().hex[:12]
        context.run_id = run_id
        self.run = PipelineRun(run_id=run_id, pipeline=graph.name)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def execute(self) -> PipelineRun:
        logger.info("run %s: starting pipeline '%s' (%d jobs)", self.run.run_id, self.graph.name, len(self.graph.order))
        self.pool = pool = ThreadPoolExecutor(max_workers=self.s.max_workers, thread_name_prefix="pipecore-job")
        self.handle._attach(self.events)
        try:
            if self.handle.cancelled:
                self._on_cancel()
            self._advance()
            while not self._done():
                try:
                    kind, name, payload = self.events.get(timeout=self._wait_time())
                except queue.Empty:
                    self._expire_timeouts()
                else:
                    if kind == "cancel":
                        self._on_cancel()
                    else:
                        self._on_complete(name, payload)
                    self._expire_timeouts()
                self._advance()
        finally:
            pool.shutdown(wait=not self.abandoned, cancel_futures=True)

        self.run.finished_at = utcnow()
        logger.info("run %s: finished with status %s", self.run.run_id, self.run.status.value)
        return self.run

    def _done(self) -> bool:
        return all(state.terminal for state in self.states.values())

    def _wait_time(self) -> Optional[float]:
        deadlines = [r.deadline for r in self.running.values() if r.deadline is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _emit(self, name: str, status: str) -> None:
        if self.s.on_event is not None:
            self.s.on_event(name, status)

    def _record(self, name: str, result: JobResult) -> None:
        self.run.record(name, result)
        self.states[name] = JobState(result.status.value)
        logger.debug("job '%s' -> %s", name, result.status.value)
        self._emit(name, result.status.value)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _advance(self) -> None:
        """Promote jobs whose dependencies are all terminal, then start them in declaration order."""
        progressed = True
        while progressed:
            progressed = False
            for name in self.graph.order:
                if self.states[name] not in (JobState.PENDING, JobState.BLOCKED):
                    continue
                if all(self.states[d].terminal for d in self.graph.deps[name]):
                    self.states[name] = JobState.READY
                else:
                    self.states[name] = JobState.BLOCKED

            for name in self.graph.order:
                if self.states[name] == JobState.READY:
                    self._start(name)
                    if self.states[name].terminal:
                        progressed = True

    def _literal_inputs(self, job: JobSpec) -> Dict[str, Any]:
        inputs = self.s.registry.schema(job.kind).defaults()
        inputs.update({k: v for k, v in job.inputs.items() if v is not None and not is_template(v)})
        return inputs

    def _scope(self, job: JobSpec) -> EvaluationScope:
        return EvaluationScope(
            context=self.context,
            results=dict(self.run.results),
            declared_outputs=self.graph.declared_outputs,
            dependencies=self.graph.dependencies(job.name),
            secrets=self.secrets,
            inputs=self._literal_inputs(job),
            cancel_requested=self.run.cancelled,
        )

    def _start(self, name: str) -> None:
        job = self.graph.jobs[name]

        if self.run.cancelled and not runs_when_cancelled(job.if_):
            self._record(name, JobResult.cancelled("run cancelled before the job started"))
            return

        try:
            should_run = evaluate_guard(job.if_, self._scope(job))
        except UnresolvedReferenceError as e:
            self._record(name, JobResult.failure("UnresolvedReference", str(e), details={"guard": job.if_}))
            return
        if not should_run:
            reason = f"guard '{job.if_}' evaluated to false" if job.if_ else "a dependency did not succeed"
            logger.info("job '%s' skipped: %s", name, reason)
            self._record(name, JobResult.skipped(reason))
            return

        executor = self.s.executors.get(job.kind)
        if executor is None:
            self._record(name, JobResult.failure("NoExecutor", f"no executor registered for kind '{job.kind.value}'"))
            return

        try:
            inputs, secrets = self._resolve(job)
        except (InputError, UnresolvedReferenceError) as e:
            self._record(name, JobResult.failure("InputError", str(e)))
            return

        timeout = job.timeout if job.timeout is not None else self.s.default_timeout
        stop = threading.Event()
        if self.run.cancelled:
            stop.set()
        ctx = ExecutionContext(
            job=job,
            pipeline=self.context,
            cancel_event=stop,
            approvals=self.approvals,
            upstream=dict(self.run.results),
            pipeline_name=self.graph.name,
        )

        logger.info("job '%s' (%s) running", name, job.kind.value)
        future = self.pool.submit(_invoke, executor, inputs, secrets, ctx)
        self.running[name] = _Running(
            future=future,
            stop=stop,
            deadline=time.monotonic() + timeout if timeout else None,
            timeout=timeout,
        )
        self.states[name] = JobState.RUNNING
        self._emit(name, JobState.RUNNING.value)
        future.add_done_callback(lambda f, n=name: self.events.put(("done", n, f)))

    def _resolve(self, job: JobSpec) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Substitute expressions, fill defaults and coerce inputs to the contract's types."""
        schema = self.s.registry.schema(job.kind)
        scope = self._scope(job)

        inputs: Dict[str, Any] = schema.defaults()
        for key, value in job.inputs.items():
            if value is None:
                continue
            if is_template(value):
                value = evaluate_value(value, scope)
                if value is UNSET:
                    # absent upstream output; the default (if any) stays
                    continue
            inputs[key] = value

        for key, spec in schema.inputs.items():
            if key not in inputs:
                if spec.required:
                    raise InputError(f"required input '{key}' has no value")
                continue
            try:
                inputs[key] = spec.type.coerce(inputs[key])
            except ValueError as e:
                raise InputError(f"input '{key}': {e}") from None

        secrets: Dict[str, str] = {}
        for key in job.secrets:
            value = job.secrets[key] or f"${{{{ secrets.{key} }}}}"
            resolved = evaluate_value(value, scope) if is_template(value) else value
            if resolved is not UNSET and resolved != "":
                secrets[key] = str(resolved)

        for key, spec in schema.secrets.items():
            if spec.required and key not in secrets:
                raise InputError(f"required secret '{key}' was not provided")
        return inputs, secrets

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _finish(self, name: str, entry: _Running, result: JobResult) -> None:
        if entry.cancel_seen and result.status != JobStatus.CANCELLED:
            result = JobResult.cancelled(
                "run cancelled while the job was running",
                details={"outcome": result.to_dict()},
            )
        self._record(name, result)

    def _on_complete(self, name: str, future: Future) -> None:
        entry = self.running.get(name)
        if entry is None or entry.future is not future:
            logger.debug("discarding late result of job '%s'", name)
            return
        del self.running[name]

        try:
            result = future.result()
        except EngineFault as e:
            logger.warning("job '%s' raised engine fault %s", name, e.kind)
            self.run.faults.append(e)
            result = JobResult.failure(e.kind, e.message, details=e.details, started_at=entry.started_at)
        except Exception as e:
            logger.exception("executor for job '%s' raised", name)
            result = JobResult.failure(
                "ExecutorError",
                f"{type(e).__name__}: {e}",
                started_at=entry.started_at,
            )
        if result.status == JobStatus.SUCCESS:
            result = self._check_outputs(self.graph.jobs[name], result)
        self._finish(name, entry, result)

    def _check_outputs(self, job: JobSpec, result: JobResult) -> JobResult:
        """Fail a successful result whose outputs the kind does not declare or cannot type."""
        declared = self.s.registry.schema(job.kind).outputs
        problems = []
        for key, value in result.outputs.items():
            spec = declared.get(key)
            if spec is None:
                problems.append(f"'{key}' is not an output of {job.kind.value}")
                continue
            try:
                spec.type.coerce(value)
            except ValueError as e:
                problems.append(f"'{key}': {e}")
        if not problems:
            return result
        logger.warning("job '%s' broke its output contract: %s", job.name, "; ".join(problems))
        return JobResult.failure(
            "OutputContractViolation",
            "; ".join(problems),
            details={"outputs": dict(result.outputs)},
            started_at=result.started_at,
        )

    def _on_cancel(self) -> None:
        if self.run.cancelled:
            return
        logger.info("run %s: cancel requested", self.run.run_id)
        self.run.cancelled = True

        for entry in self.running.values():
            entry.cancel_seen = True
            entry.stop.set()

        for name in self.graph.order:
            if self.states[name] in (JobState.PENDING, JobState.BLOCKED, JobState.READY):
                if not runs_when_cancelled(self.graph.jobs[name].if_):
                    self._record(name, JobResult.cancelled("run cancelled"))

    def _expire_timeouts(self) -> None:
        now = time.monotonic()
        for name in [n for n, r in self.running.items() if r.deadline is not None and r.deadline <= now]:
            entry = self.running.pop(name)
            entry.stop.set()
            self.abandoned = True
            logger.warning("job '%s' timed out after %ss", name, entry.timeout)
            self._finish(
                name,
                entry,
                JobResult.failure(
                    "Timeout",
                    f"job did not finish within {entry.timeout}s",
                    details={"timeout": entry.timeout},
                    started_at=entry.started_at,
                ),
            )
