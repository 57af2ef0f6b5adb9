# tasks.py
from __future__ import annotations

import os
import re
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .errors import TaskCancelled
from .model import Job, Step, TaskRequest, TaskResult

OUTPUT_ENV = "RELEASECI_OUTPUT"


@dataclass
class TaskContext:
    """
    Per-invocation handle given to a task.

    `cancel_event` is raised when the run is superseded or the job times out;
    tasks are expected to poll it (or call `check_cancelled`) and stop.
    """
    job: str
    run_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None
    publish_mode: Any = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise TaskCancelled(f"[{self.job}] cancelled")

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


class Task(Protocol):
    def run(self, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        ...


def _coerce_result(value: Any) -> TaskResult:
    if isinstance(value, TaskResult):
        return value
    if value is None or value is True:
        return TaskResult.success()
    if value is False:
        return TaskResult.failure("task reported failure")
    if isinstance(value, Mapping):
        return TaskResult.success(outputs={str(k): str(v) for k, v in value.items()})
    raise TypeError(f"task returned unsupported value: {value!r}")


class CallableTask:
    """Wrap a plain function `fn(request, ctx)`; bool/dict/None returns are coerced."""

    def __init__(self, fn: Callable[[TaskRequest, TaskContext], Any]):
        self.fn = fn

    def run(self, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        return _coerce_result(self.fn(request, ctx))

    def __repr__(self) -> str:
        return f"CallableTask({getattr(self.fn, '__name__', self.fn)!r})"


# ----------------------------------------------------------------------
# Shell execution
# ----------------------------------------------------------------------

def env_key(name: str) -> str:
    """`needs.check.outputs.test_results_url` -> `NEEDS_CHECK_OUTPUTS_TEST_RESULTS_URL`"""
    return re.sub(r"[^A-Za-z0-9]+", "_", name).strip("_").upper()


def task_env(request: TaskRequest, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    for k, v in request.inputs.items():
        env[env_key(k)] = v
    for name, loc in request.artifacts.items():
        env[env_key(f"artifact_{name}")] = loc.uri
    env.update(extra or {})
    return env


def run_shell(
    cmd: str,
    *,
    job: str,
    cwd: Path,
    env: Mapping[str, str],
    ctx: TaskContext,
    poll_interval: float = 0.1,
) -> subprocess.CompletedProcess:
    """
    Run one shell command, killing it when the context is cancelled.
    Output is spooled to temp files so long logs cannot fill a pipe.
    """
    if not cwd.exists():
        raise FileNotFoundError(f"[{job}] cwd not found: {cwd}")

    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        proc = subprocess.Popen(cmd, shell=True, cwd=str(cwd), env=dict(env), stdout=out, stderr=err)
        while True:
            try:
                proc.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled:
                    proc.kill()
                    proc.wait()
                    raise TaskCancelled(f"[{job}] cancelled while running: {cmd}")

        out.seek(0)
        err.seek(0)
        return subprocess.CompletedProcess(
            cmd,
            proc.returncode,
            out.read().decode("utf-8", errors="replace"),
            err.read().decode("utf-8", errors="replace"),
        )


def _read_outputs(path: Path) -> Dict[str, str]:
    outputs: Dict[str, str] = {}
    if not path.exists():
        return outputs
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            outputs[key.strip()] = value.strip()
    return outputs


def _materialize(request: TaskRequest, dest: Path) -> Dict[str, str]:
    """Write each consumed artifact to `dest/<name>`; returns the `ARTIFACT_<NAME>_PATH` variables."""
    if request.fetch is None or not request.artifacts:
        return {}
    dest.mkdir(parents=True, exist_ok=True)
    env = {}
    for name, loc in request.artifacts.items():
        path = dest / name
        path.write_bytes(request.fetch(loc))
        env[env_key(f"artifact_{name}_path")] = str(path)
    return env


class ShellTask:
    """
    Run a job's steps in order as shell commands.

    Steps see request inputs and artifact locators as environment variables.
    Consumed artifacts are also copied into a scratch directory and exported
    as `ARTIFACT_<NAME>_PATH`, so steps can hand them to tools that want files.
    A step may append `key=value` lines to the file named by $RELEASECI_OUTPUT
    to set job outputs. `publish` maps artifact names to files (relative to
    `repo_root`) read and published once every step succeeded.
    """

    def __init__(
        self,
        steps: List[Step],
        *,
        publish: Optional[Mapping[str, str]] = None,
        repo_root: str | Path = ".",
        env: Optional[Mapping[str, str]] = None,
    ):
        self.steps = list(steps)
        self.publish = dict(publish or {})
        self.repo_root = Path(repo_root)
        self.env = dict(env or {})

    def run(self, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        root = self.repo_root.resolve()
        with tempfile.TemporaryDirectory(prefix="releaseci-") as tmp:
            output_file = Path(tmp) / "outputs"
            paths = _materialize(request, Path(tmp) / "artifacts")
            env = task_env(request, {**paths, **self.env, OUTPUT_ENV: str(output_file)})

            for step in self.steps:
                ctx.check_cancelled()
                proc = run_shell(
                    step.run,
                    job=request.job,
                    cwd=(root / (step.cwd or ".")).resolve(),
                    env=env,
                    ctx=ctx,
                )
                if proc.returncode != 0:
                    tail = (proc.stderr or proc.stdout or "")[-4000:]
                    return TaskResult.failure(
                        f"step '{step.name}' failed: {step.run}\n{tail}".rstrip(),
                        exit_code=proc.returncode,
                    )

            outputs = _read_outputs(output_file)

        artifacts = []
        for name, rel in self.publish.items():
            path = root / rel
            if path.is_file():
                artifacts.append((name, path.read_bytes(), {"path": rel}))
        return TaskResult.success(outputs=outputs, artifacts=artifacts)


# ----------------------------------------------------------------------
# Task runner
# ----------------------------------------------------------------------

class TaskRunner:
    """Resolves which task executes a job and invokes it."""

    def __init__(self, repo_root: str | Path = "."):
        self.repo_root = Path(repo_root)

    def task_for(self, job: Job) -> Task:
        if job.task is not None:
            if hasattr(job.task, "run"):
                return job.task
            if callable(job.task):
                return CallableTask(job.task)
            raise TypeError(f"job '{job.name}' has an unusable task: {job.task!r}")
        if job.steps:
            return ShellTask(job.steps, repo_root=self.repo_root)
        return CallableTask(lambda request, ctx: None)

    def invoke(self, job: Job, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        ctx.check_cancelled()
        return _coerce_result(self.task_for(job).run(request, ctx))
