# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union


TAG_REF_PREFIX = "refs/tags/"
BRANCH_REF_PREFIX = "refs/heads/"


class TriggerKind(str, Enum):
    """What started a run."""
    TAG_PUSH = "tag-push"
    DISPATCH = "dispatch"
    PULL_REQUEST = "pull-request"
    CALL = "call"


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
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCESS, JobState.FAILURE, JobState.SKIPPED, JobState.CANCELLED})


class RunOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass
class Job:
    """
    A node of the release graph.

    `needs` names the jobs that must reach a terminal state first.
    `artifacts` is the publish contract: every name listed must be published
    by a successful task or the job is failed.
    `consumes` names artifacts (optionally `job/name`) resolved from completed
    ancestors before the task runs.
    `secret` marks a secret-gated job; its publish mode is resolved from the
    trigger's secrets (real publish when present, dry run otherwise).
    """
    name: str
    steps: list[Step] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    condition: Optional[Callable[..., bool]] = None
    task: Any = None
    artifacts: list[str] = field(default_factory=list)
    consumes: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    always_run: bool = False
    required: bool = True
    timeout: float | None = None
    secret: str | None = None


@dataclass
class TriggerEvent:
    """
    The event record a run is started from.

    `secrets` maps secret names to values. An iterable of names is accepted
    too (values unknown); an empty string value counts as absent.
    """
    kind: TriggerKind
    ref: str = ""
    secrets: Dict[str, Optional[str]] = field(default_factory=dict)
    head_ref: str | None = None

    def __post_init__(self) -> None:
        self.kind = TriggerKind(self.kind)
        if not isinstance(self.secrets, Mapping):
            self.secrets = {name: None for name in self.secrets}
        else:
            self.secrets = dict(self.secrets)

    @property
    def ref_name(self) -> str:
        for prefix in (TAG_REF_PREFIX, BRANCH_REF_PREFIX):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    def has_secret(self, name: str) -> bool:
        return name in self.secrets and self.secrets[name] != ""

    def secret_value(self, name: str) -> Optional[str]:
        return self.secrets.get(name)

    def to_dict(self) -> Dict[str, Any]:
        # secret values never leave the process
        return {
            "kind": self.kind.value,
            "ref": self.ref,
            "head_ref": self.head_ref,
            "secrets": sorted(n for n in self.secrets if self.has_secret(n)),
        }


@dataclass(frozen=True)
class Locator:
    """Where a published artifact lives. Stable for the lifetime of its run."""
    run_id: str
    job: str
    name: str
    uri: str
    digest: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job": self.job,
            "name": self.name,
            "uri": self.uri,
            "digest": self.digest,
            "size": self.size,
        }


@dataclass(frozen=True)
class Artifact:
    locator: Locator
    outputs: Mapping[str, str] = field(default_factory=dict)

    @property
    def producer(self) -> str:
        return self.locator.job

    @property
    def name(self) -> str:
        return self.locator.name


@dataclass
class TaskRequest:
    """What the coordinator hands to a task."""
    job: str
    inputs: Dict[str, str] = field(default_factory=dict)
    artifacts: Dict[str, Locator] = field(default_factory=dict)
    # reads a locator's bytes from the run's store; set by the coordinator
    fetch: Optional[Callable[[Locator], bytes]] = field(default=None, repr=False, compare=False)


ArtifactSpec = Union[Tuple[str, Union[bytes, str]], Tuple[str, Union[bytes, str], Mapping[str, str]]]


@dataclass
class TaskResult:
    """What a task hands back. `artifacts` holds (name, content[, outputs]) tuples."""
    status: str = "success"
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: List[ArtifactSpec] = field(default_factory=list)
    error: str | None = None
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(
        cls,
        outputs: Optional[Mapping[str, str]] = None,
        artifacts: Optional[Iterable[ArtifactSpec]] = None,
    ) -> TaskResult:
        return cls(status="success", outputs=dict(outputs or {}), artifacts=list(artifacts or []))

    @classmethod
    def failure(cls, error: str, exit_code: int | None = None) -> TaskResult:
        return cls(status="failure", error=error, exit_code=exit_code)


@dataclass
class RunResult:
    """The externally observable result of one run."""
    run_id: str
    outcome: RunOutcome
    jobs: Dict[str, JobState]
    artifacts: Dict[str, Locator] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    publish_modes: Dict[str, str] = field(default_factory=dict)
    trigger: Optional[TriggerEvent] = None
    group: str | None = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "outcome": self.outcome.value,
            "jobs": {name: state.value for name, state in self.jobs.items()},
            "artifacts": {name: loc.to_dict() for name, loc in self.artifacts.items()},
            "errors": dict(self.errors),
            "reasons": dict(self.reasons),
            "outputs": {name: dict(out) for name, out in self.outputs.items()},
            "publish_modes": dict(self.publish_modes),
            "trigger": self.trigger.to_dict() if self.trigger else None,
            "group": self.group,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
