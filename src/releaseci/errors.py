# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class OrchestrationError(Exception):
    """Base class for every error raised by releaseci."""
    kind = "error"


# ----------------------------------------------------------------------
# Graph construction (fatal: no run can start)
# ----------------------------------------------------------------------

@dataclass
class CycleError(OrchestrationError):
    job: str
    cycle: List[str]
    kind = "cycle"

    def __str__(self) -> str:
        path = " -> ".join(self.cycle + self.cycle[:1])
        return f"adding job '{self.job}' would create a dependency cycle: {path}"


@dataclass
class DuplicateJobError(OrchestrationError):
    job: str
    kind = "duplicate-job"

    def __str__(self) -> str:
        return f"job '{self.job}' is already declared"


@dataclass
class UnknownDependencyError(OrchestrationError):
    job: str
    dependency: str
    known: List[str] = field(default_factory=list)
    kind = "unknown-dependency"

    def __str__(self) -> str:
        return (
            f"job '{self.job}' needs missing job '{self.dependency}'. "
            f"Known jobs: {sorted(self.known)}"
        )


@dataclass
class InvalidNameError(OrchestrationError):
    what: str
    name: str
    kind = "invalid-name"

    def __str__(self) -> str:
        return f"{self.what} name {self.name!r} must be a single non-empty path segment"


def check_name(what: str, name: str) -> str:
    """Job and artifact names become directory entries in file-backed stores."""
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise InvalidNameError(what=what, name=name)
    return name


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

@dataclass
class DuplicateArtifactError(OrchestrationError):
    job: str
    name: str
    kind = "duplicate-artifact"

    def __str__(self) -> str:
        return f"artifact '{self.name}' was already published by job '{self.job}' in this run"


@dataclass
class NotFoundError(OrchestrationError):
    name: str
    requester: Optional[str] = None
    kind = "artifact-not-found"

    def __str__(self) -> str:
        who = f" for job '{self.requester}'" if self.requester else ""
        return f"no completed upstream job published artifact '{self.name}'{who}"


@dataclass
class ArtifactWiringError(NotFoundError):
    """A job consumes an artifact none of its ancestors declares."""
    kind = "artifact-wiring"

    def __str__(self) -> str:
        return (
            f"job '{self.requester}' consumes artifact '{self.name}' "
            f"but none of its ancestors declares it"
        )


# ----------------------------------------------------------------------
# Per-job failures (local to one job instance)
# ----------------------------------------------------------------------

@dataclass
class TaskFailure(OrchestrationError):
    job: str
    reason: str
    exit_code: Optional[int] = None
    kind = "task-failure"

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] task failed{code}: {self.reason}"


@dataclass
class JobTimeoutError(OrchestrationError):
    job: str
    seconds: float
    kind = "timeout"

    def __str__(self) -> str:
        return f"[{self.job}] exceeded its {self.seconds:g}s time limit"


@dataclass
class ContractViolation(OrchestrationError):
    job: str
    missing: List[str]
    kind = "contract-violation"

    def __str__(self) -> str:
        return f"[{self.job}] declared artifacts were not published: {', '.join(self.missing)}"


class TaskCancelled(OrchestrationError):
    """Raised inside a task when it observes its run was cancelled."""
    kind = "cancelled"


# ----------------------------------------------------------------------
# Runs and workflow files
# ----------------------------------------------------------------------

@dataclass
class ConcurrencyConflict(OrchestrationError):
    group: str
    holder: str
    kind = "concurrency-conflict"

    def __str__(self) -> str:
        return f"concurrency group '{self.group}' is held by in-progress run {self.holder}"


@dataclass
class WorkflowLoadError(OrchestrationError):
    path: str
    message: str
    kind = "workflow-load"

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"
