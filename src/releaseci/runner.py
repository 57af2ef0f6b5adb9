# runner.py
from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .artifacts import ArtifactStore
from .dag import DependencyGraph
from .errors import (
    ConcurrencyConflict,
    ContractViolation,
    JobTimeoutError,
    OrchestrationError,
    TaskCancelled,
    TaskFailure,
)
from .gates import GateEvaluator, UpstreamOutcome
from .model import Job, JobState, RunOutcome, RunResult, TaskRequest, TaskResult, TriggerEvent
from .publish import PublishMode
from .settings import Settings
from .tasks import TaskContext, TaskRunner
from .ui.console import Console, get_console


_TRANSITIONS = {
    JobState.PENDING: {JobState.BLOCKED, JobState.CANCELLED},
    JobState.BLOCKED: {JobState.READY, JobState.SKIPPED, JobState.CANCELLED},
    JobState.READY: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCESS, JobState.FAILURE, JobState.CANCELLED},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobInstance:
    """One job of one run. Owned by exactly one Run."""
    job: Job
    state: JobState = JobState.PENDING
    reason: str = ""
    error: Optional[str] = None
    upstream_failure: bool = False
    outputs: Dict[str, str] = field(default_factory=dict)
    publish_mode: Optional[PublishMode] = None
    ctx: Optional[TaskContext] = None
    deadline: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.job.name


class Run:
    """One execution of the graph for one trigger event."""

    def __init__(
        self,
        graph: DependencyGraph,
        trigger: TriggerEvent,
        *,
        group: str,
        store: ArtifactStore,
        run_id: Optional[str] = None,
        console: Optional[Console] = None,
    ):
        self.id = run_id or store.run_id
        self.graph = graph
        self.trigger = trigger
        self.group = group
        self.store = store
        self.console = console
        self.started_at = _now()
        self.finished_at: Optional[datetime] = None
        self.outcome = RunOutcome.PENDING
        self.cancel_reason = ""
        self.error: Optional[str] = None

        self._lock = threading.RLock()
        self._cancelled = threading.Event()
        self._done = threading.Event()

        self.instances: Dict[str, JobInstance] = {j.name: JobInstance(job=j) for j in graph}
        for inst in self.instances.values():
            self.transition(inst, JobState.BLOCKED)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def in_progress(self) -> bool:
        return not self._done.is_set()

    def transition(self, inst: JobInstance, state: JobState, *, reason: str = "") -> bool:
        """Apply a state change if the state machine allows it; terminal states are final."""
        with self._lock:
            if state not in _TRANSITIONS.get(inst.state, ()):
                return False
            inst.state = state
            if reason:
                inst.reason = reason
            if state is JobState.RUNNING:
                inst.started_at = _now()
            elif state.terminal:
                inst.finished_at = _now()
            return True

    def upstream_for(self, job: Job) -> Dict[str, UpstreamOutcome]:
        with self._lock:
            out = {}
            for dep in job.needs:
                inst = self.instances[dep]
                out[dep] = UpstreamOutcome(
                    state=inst.state,
                    optional=not inst.job.required,
                    failed_upstream=inst.upstream_failure,
                )
            return out

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel every non-terminal job instance. Returns False if the run already finished."""
        with self._lock:
            if self.finished_at is not None or self._cancelled.is_set():
                return False
            self._cancelled.set()
            self.cancel_reason = reason
            for inst in self.instances.values():
                if inst.ctx is not None:
                    inst.ctx.cancel_event.set()
                if not inst.state.terminal:
                    self.transition(inst, JobState.CANCELLED, reason=reason)
        (self.console or get_console()).print_run_cancelled(self.id, reason)
        return True

    def abort(self, error: str) -> None:
        """Coordinator-level failure: stop everything and fail the run."""
        with self._lock:
            self.error = error
            for inst in self.instances.values():
                if inst.ctx is not None:
                    inst.ctx.cancel_event.set()
                if not inst.state.terminal:
                    self.transition(inst, JobState.CANCELLED, reason="run aborted")

    def _compute_outcome(self) -> RunOutcome:
        if self._cancelled.is_set():
            return RunOutcome.CANCELLED
        if self.error is not None:
            return RunOutcome.FAILURE
        for inst in self.instances.values():
            if not inst.job.required:
                continue
            if inst.state in (JobState.FAILURE, JobState.CANCELLED) or not inst.state.terminal:
                return RunOutcome.FAILURE
            if inst.state is JobState.SKIPPED and inst.upstream_failure:
                return RunOutcome.FAILURE
        return RunOutcome.SUCCESS

    def finish(self) -> RunOutcome:
        """Settle the outcome. Waiters are woken separately by `close`."""
        with self._lock:
            if self.finished_at is None:
                self.outcome = self._compute_outcome()
                self.finished_at = _now()
            return self.outcome

    def close(self) -> None:
        self._done.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def result(self) -> RunResult:
        with self._lock:
            return RunResult(
                run_id=self.id,
                outcome=self.outcome,
                jobs={n: i.state for n, i in self.instances.items()},
                artifacts=self.store.locators(),
                errors={n: i.error for n, i in self.instances.items() if i.error},
                reasons={n: i.reason for n, i in self.instances.items() if i.reason},
                outputs={n: dict(i.outputs) for n, i in self.instances.items() if i.outputs},
                publish_modes={n: i.publish_mode.label for n, i in self.instances.items() if i.publish_mode},
                trigger=self.trigger,
                group=self.group,
                started_at=self.started_at,
                finished_at=self.finished_at,
            )


class RunHandle:
    """What `submit` returns: wait on, inspect or cancel a run."""

    def __init__(self, run: Run, superseded: Optional[str] = None):
        self.run = run
        self.superseded = superseded

    @property
    def id(self) -> str:
        return self.run.id

    @property
    def done(self) -> bool:
        return not self.run.in_progress

    @property
    def outcome(self) -> RunOutcome:
        return self.run.outcome

    def wait(self, timeout: Optional[float] = None) -> RunResult:
        if not self.run.wait(timeout):
            raise TimeoutError(f"run {self.run.id} still in progress after {timeout}s")
        return self.run.result()

    def cancel(self) -> bool:
        return self.run.cancel("cancelled by caller")

    def result(self) -> RunResult:
        return self.run.result()


class _GroupLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class ConcurrencyRegistry:
    """
    Process-wide map of concurrency group -> in-progress run.

    Each admit/release decision happens under the group's own lock. A group's
    lock is dropped once no run holds the group and no caller is waiting on it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._group_locks: Dict[str, _GroupLock] = {}
        self._active: Dict[str, Run] = {}

    @contextmanager
    def _group_lock(self, key: str) -> Iterator[None]:
        with self._lock:
            entry = self._group_locks.get(key)
            if entry is None:
                entry = self._group_locks[key] = _GroupLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0 and key not in self._active:
                    del self._group_locks[key]

    @property
    def groups(self) -> List[str]:
        """Keys that currently have a lock entry."""
        with self._lock:
            return list(self._group_locks)

    def admit(self, key: str, run: Run, *, cancel_in_progress: bool = True) -> Optional[Run]:
        """Register `run` as the holder of `key`, cancelling the run it supersedes (returned)."""
        with self._group_lock(key):
            current = self._active.get(key)
            superseded = None
            if current is not None and current is not run and current.in_progress:
                if not cancel_in_progress:
                    raise ConcurrencyConflict(group=key, holder=current.id)
                if current.cancel(reason=f"superseded by run {run.id}"):
                    superseded = current
            self._active[key] = run
            return superseded

    def release(self, key: str, run: Run) -> None:
        with self._group_lock(key):
            if self._active.get(key) is run:
                del self._active[key]

    def active(self, key: str) -> Optional[Run]:
        with self._group_lock(key):
            return self._active.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

def _unpack(spec) -> Tuple[str, object, Dict[str, str]]:
    if len(spec) == 3:
        name, content, outputs = spec
        return name, content, dict(outputs or {})
    name, content = spec
    return name, content, {}


class RunCoordinator:
    """
    Admits runs, drives each one wave by wave on a thread pool and
    aggregates the outcome.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        *,
        settings: Optional[Settings] = None,
        runner: Optional[TaskRunner] = None,
        evaluator: Optional[GateEvaluator] = None,
        registry: Optional[ConcurrencyRegistry] = None,
        max_workers: Optional[int] = None,
        job_timeout: Optional[float] = None,
        artifact_root: str | Path | None = None,
        group_template: Optional[str] = None,
        cancel_in_progress: bool = True,
        run_history: Optional[int] = None,
        poll_interval: float = 0.05,
        console: Optional[Console] = None,
    ):
        # graph-construction errors are fatal here, before any run exists
        graph.validate()
        settings = settings or Settings()

        self.graph = graph
        self.runner = runner or TaskRunner()
        self.evaluator = evaluator or GateEvaluator()
        self.registry = registry or ConcurrencyRegistry()
        self.max_workers = max_workers or settings.max_workers
        self.job_timeout = job_timeout if job_timeout is not None else settings.job_timeout
        root = artifact_root if artifact_root is not None else settings.artifact_dir
        self.artifact_root = Path(root) if root else None
        self.retention_runs = settings.retention_runs
        self.group_template = group_template or settings.concurrency_group
        self.cancel_in_progress = cancel_in_progress
        self.run_history = run_history if run_history is not None else settings.run_history
        self.poll_interval = poll_interval
        self.console = console

        self._runs: Dict[str, Run] = {}
        self._runs_lock = threading.Lock()

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def group_key(self, trigger: TriggerEvent) -> str:
        return self.group_template.format(ref=trigger.head_ref or trigger.ref, event=trigger.kind.value)

    def submit(self, trigger: TriggerEvent) -> RunHandle:
        run_id = uuid.uuid4().hex
        run = Run(
            self.graph,
            trigger,
            group=self.group_key(trigger),
            store=ArtifactStore(run_id, root=self.artifact_root),
            console=self.console,
        )
        superseded = self.registry.admit(run.group, run, cancel_in_progress=self.cancel_in_progress)

        with self._runs_lock:
            self._runs[run.id] = run

        thread = threading.Thread(target=self._drive, args=(run,), name=f"releaseci-run-{run.id[:8]}", daemon=True)
        thread.start()
        return RunHandle(run, superseded=superseded.id if superseded else None)

    def run(self, trigger: TriggerEvent, timeout: Optional[float] = None) -> RunResult:
        return self.submit(trigger).wait(timeout)

    def get(self, run_id: str) -> Run:
        with self._runs_lock:
            return self._runs[run_id]

    @property
    def runs(self) -> List[Run]:
        with self._runs_lock:
            return list(self._runs.values())

    def _forget_finished(self) -> None:
        """Drop the earliest-submitted finished runs beyond `run_history`; in-progress runs stay."""
        if self.run_history <= 0:
            return
        with self._runs_lock:
            finished = [r for r in self._runs.values() if r.finished_at is not None]
            excess = len(finished) - self.run_history
            if excess <= 0:
                return
            for stale in finished[:excess]:
                del self._runs[stale.id]

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------

    def _drive(self, run: Run) -> None:
        console = self._console
        console.print_run_started(
            run_id=run.id,
            event=run.trigger.kind.value,
            ref=run.trigger.ref,
            group=run.group,
            job_count=len(run.instances),
        )

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"releaseci-{run.id[:8]}")
        try:
            wave_index = 0
            while not run.cancelled:
                wave = self._next_wave(run)
                if not wave:
                    break
                console.print_wave(wave_index, [i.name for i in wave])
                wave_index += 1
                self._run_wave(run, pool, wave)
        except Exception as e:
            # keep waiters from hanging on a run whose loop died
            console.print_exception(e)
            run.abort(f"{type(e).__name__}: {e}")
        finally:
            # running tasks were signalled; do not block on them
            pool.shutdown(wait=False, cancel_futures=True)
            run.finish()
            try:
                self.registry.release(run.group, run)
                if self.artifact_root is not None and self.retention_runs > 0:
                    ArtifactStore.prune(self.artifact_root, keep=self.retention_runs)
                console.print_results(run.result())
            finally:
                self._forget_finished()
                run.close()

    def _next_wave(self, run: Run) -> List[JobInstance]:
        """
        Gate every blocked job whose dependencies are terminal. Skips can
        unblock further jobs, so repeat until nothing changes; return the
        jobs that became ready, in declaration order.
        """
        wave: List[JobInstance] = []
        progress = True
        while progress and not run.cancelled:
            progress = False
            for inst in run.instances.values():
                if inst.state is not JobState.BLOCKED:
                    continue
                if not all(run.instances[d].state.terminal for d in inst.job.needs):
                    continue

                decision = self.evaluator.decide(inst.job, run.trigger, run.upstream_for(inst.job))
                if decision.run:
                    if run.transition(inst, JobState.READY):
                        wave.append(inst)
                    continue

                inst.upstream_failure = decision.upstream_failure
                if run.transition(inst, JobState.SKIPPED, reason=decision.reason):
                    self._console.print_job_skipped(inst.name, decision.reason)
                    progress = True
        return wave

    def _timeout_for(self, job: Job) -> Optional[float]:
        t = job.timeout if job.timeout is not None else self.job_timeout
        return t if t and t > 0 else None

    def _run_wave(self, run: Run, pool: ThreadPoolExecutor, wave: List[JobInstance]) -> None:
        futures: Dict[Future, JobInstance] = {}

        for inst in wave:
            if run.cancelled:
                break
            inst.publish_mode = self.evaluator.publish_mode(inst.job, run.trigger)
            inst.ctx = TaskContext(job=inst.name, run_id=run.id, publish_mode=inst.publish_mode)
            # `running` and the deadline start when a worker picks the job up
            futures[pool.submit(self._invoke, run, inst)] = inst

        while futures:
            done, _ = wait(list(futures), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
            for fut in done:
                self._complete(run, futures.pop(fut), fut)

            now = time.monotonic()
            for fut, inst in list(futures.items()):
                if inst.deadline is not None and now >= inst.deadline:
                    del futures[fut]
                    inst.ctx.cancel_event.set()
                    self._fail(run, inst, JobTimeoutError(job=inst.name, seconds=self._timeout_for(inst.job)))

            if run.cancelled:
                # Run.cancel already moved these to `cancelled`
                futures.clear()

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def _request_for(self, run: Run, job: Job) -> TaskRequest:
        inputs: Dict[str, str] = {
            "event": run.trigger.kind.value,
            "ref": run.trigger.ref,
            "ref_name": run.trigger.ref_name,
        }
        inputs.update(job.env)
        for dep in job.needs:
            for key, value in run.instances[dep].outputs.items():
                inputs[f"needs.{dep}.outputs.{key}"] = value

        ancestors = self.graph.ancestors(job.name)
        artifacts = {}
        for wanted in job.consumes:
            loc = run.store.resolve(wanted, producers=ancestors, requester=job.name)
            artifacts[wanted.rpartition("/")[2]] = loc
        return TaskRequest(job=job.name, inputs=inputs, artifacts=artifacts, fetch=run.store.read)

    def _invoke(self, run: Run, inst: JobInstance) -> TaskResult:
        # runs on a pool thread
        with run._lock:
            if not run.transition(inst, JobState.RUNNING):
                raise TaskCancelled(f"[{inst.name}] cancelled before it started")
            timeout = self._timeout_for(inst.job)
            inst.deadline = time.monotonic() + timeout if timeout else None
            inst.ctx.deadline = inst.deadline
        self._console.print_job_start(inst.name, inst.publish_mode.label if inst.publish_mode else None)

        request = self._request_for(run, inst.job)
        return self.runner.invoke(inst.job, request, inst.ctx)

    def _fail(self, run: Run, inst: JobInstance, err: OrchestrationError) -> None:
        with run._lock:
            if inst.state is not JobState.RUNNING:
                return
            inst.error = str(err)
            run.transition(inst, JobState.FAILURE, reason=err.kind)
        self._console.print_failure(inst.name, str(err), getattr(err, "exit_code", None))

    def _complete(self, run: Run, inst: JobInstance, fut: Future) -> None:
        try:
            result = fut.result()
        except TaskCancelled:
            if run.transition(inst, JobState.CANCELLED, reason="task observed cancellation"):
                self._console.print_job_cancelled(inst.name)
            return
        except OrchestrationError as e:
            self._fail(run, inst, e)
            return
        except Exception as e:
            self._fail(run, inst, TaskFailure(job=inst.name, reason=f"{type(e).__name__}: {e}"))
            return

        # superseded or timed out while the task was finishing
        if inst.state is not JobState.RUNNING:
            return

        if not result.ok:
            self._fail(
                run,
                inst,
                TaskFailure(job=inst.name, reason=result.error or "task reported failure", exit_code=result.exit_code),
            )
            return

        try:
            for spec in result.artifacts:
                name, content, outputs = _unpack(spec)
                run.store.publish(inst.name, name, content, outputs)
        except OrchestrationError as e:
            self._fail(run, inst, e)
            return

        published = set(run.store.published_by(inst.name))
        missing = [a for a in inst.job.artifacts if a not in published]
        if missing:
            self._fail(run, inst, ContractViolation(job=inst.name, missing=missing))
            return

        inst.outputs = dict(result.outputs)
        if inst.publish_mode is not None:
            inst.outputs.setdefault("publish_mode", inst.publish_mode.label)
        if run.transition(inst, JobState.SUCCESS):
            run.store.mark_completed(inst.name)
            self._console.print_success(inst.name)


# ----------------------------------------------------------------------
# Convenience
# ----------------------------------------------------------------------

def run_graph(graph: DependencyGraph, trigger: TriggerEvent, **kwargs) -> RunResult:
    """Run `graph` once for `trigger` and block until it finishes."""
    return RunCoordinator(graph, **kwargs).run(trigger)


def plan_run(
    graph: DependencyGraph,
    trigger: TriggerEvent,
    evaluator: Optional[GateEvaluator] = None,
) -> List[List[Tuple[str, Optional[str]]]]:
    """
    Preview a run without executing tasks: ready-set waves, each job paired
    with the skip reason the gates would give, assuming every job that runs
    succeeds.
    """
    evaluator = evaluator or GateEvaluator()
    states: Dict[str, UpstreamOutcome] = {}
    plan: List[List[Tuple[str, Optional[str]]]] = []

    for wave in graph.topological_schedule():
        entries = []
        for name in wave:
            job = graph.get(name)
            decision = evaluator.decide(job, trigger, {d: states[d] for d in job.needs})
            state = JobState.SUCCESS if decision.run else JobState.SKIPPED
            states[name] = UpstreamOutcome(state=state, optional=not job.required)
            entries.append((name, None if decision.run else decision.reason))
        plan.append(entries)
    return plan
