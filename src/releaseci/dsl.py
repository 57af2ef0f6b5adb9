# src/releaseci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .dag import DependencyGraph
from .gates import AllOf, Condition, SecretPresent, TriggerIs, UpstreamIs, on_tag
from .model import Job, JobState, Step, TriggerKind
from .publish import CommandPublisher, PublishTask
from .tasks import ShellTask


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Condition helpers
# ---------------------------------------------------------------------

def on_event(*kinds: str | TriggerKind) -> Condition:
    return TriggerIs(tuple(TriggerKind(k) for k in kinds))


def has_secret(name: str) -> Condition:
    return SecretPresent(name)


def succeeded(job_name: str) -> Condition:
    return UpstreamIs(job_name, (JobState.SUCCESS,))


def failed(job_name: str) -> Condition:
    return UpstreamIs(job_name, (JobState.FAILURE,))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    when: Optional[Callable[..., bool]] = None,
    task: Any = None,
    artifacts: Optional[List[str]] = None,
    consumes: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    always_run: bool = False,
    required: bool = True,
    timeout: float | None = None,
    secret: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    files: Optional[Dict[str, str]] = None,  # artifact name -> path, published after the steps
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final and task is None:
        raise ValueError(f"job({name!r}) must have at least one step or a task")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    artifacts = list(artifacts or [])
    if files:
        if task is not None:
            raise ValueError(f"job({name!r}): files= publishes from shell steps and cannot be combined with task=")
        task = ShellTask(steps_final, publish=files)
        artifacts.extend(n for n in files if n not in artifacts)

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=when,
        task=task,
        artifacts=artifacts,
        consumes=list(consumes or []),
        env={k: str(v) for k, v in (env or {}).items()},
        always_run=always_run,
        required=required,
        timeout=timeout,
        secret=secret,
    )


def publish_job(
    name: str,
    *,
    secret: str,
    real: str,
    dry_run: str,
    needs: Optional[List[str]] = None,
    when: Optional[Callable[..., bool]] = None,
    cwd: str = ".",
    timeout: float | None = None,
) -> Job:
    """A registry-publish job: real publish when `secret` is set, dry run otherwise."""
    return job(
        name,
        task=PublishTask(CommandPublisher(real=real, dry_run=dry_run, credential_env=secret, cwd=cwd)),
        needs=needs,
        when=when,
        secret=secret,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._artifacts: list[str] = []
        self._consumes: list[str] = []
        self._condition: Optional[Callable[..., bool]] = None
        self._task: Any = None
        self._always_run = False
        self._required = True
        self._timeout: float | None = None
        self._secret: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_task(self, task: Any):
        self._task = task
        return self

    def with_env(self, **env):
        # force values to str, they end up in a child environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def produces(self, *names: str):
        self._artifacts.extend(names)
        return self

    def consumes(self, *names: str):
        self._consumes.extend(names)
        return self

    def when(self, condition: Callable[..., bool]):
        self._condition = condition if self._condition is None else AllOf((self._condition, condition))
        return self

    def only_on_tag(self, pattern: str = "v*"):
        return self.when(on_tag(pattern))

    def always(self, enabled: bool = True):
        self._always_run = enabled
        return self

    def optional(self, enabled: bool = True):
        self._required = not enabled
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def gated_on_secret(self, name: str):
        self._secret = name
        return self

    def build(self) -> Job:
        if not self._steps and self._task is None:
            raise ValueError(f"Job '{self.name}' has no steps and no task")

        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            task=self._task,
            artifacts=list(self._artifacts),
            consumes=list(self._consumes),
            env=dict(self._env),
            always_run=self._always_run,
            required=self._required,
            timeout=self._timeout,
            secret=self._secret,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "1.72.1"]).jobs(
            lambda v: job(f"check-{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> DependencyGraph:
    """
    Workflow definition helper. Lists (e.g. from a matrix) are flattened.

        from releaseci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )
    """
    graph = DependencyGraph()
    for item in jobs:
        for j in item if isinstance(item, list) else [item]:
            graph.add_job(j)
    return graph


workflow = wf  # alias (avoid naming your function workflow if you use it)
