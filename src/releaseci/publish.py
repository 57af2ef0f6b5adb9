"""Registry publish boundary: real publish vs dry run, chosen once per run from secret presence."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union

from .model import Job, TaskRequest, TaskResult, TriggerEvent
from .tasks import TaskContext, run_shell, task_env


@dataclass(frozen=True)
class RealPublish:
    credential: Optional[str] = field(default=None, repr=False)
    label = "real"


@dataclass(frozen=True)
class DryRun:
    reason: str = ""
    label = "dry-run"


PublishMode = Union[RealPublish, DryRun]


def resolve_publish_mode(job: Job, trigger: TriggerEvent) -> Optional[PublishMode]:
    """None for jobs that are not secret-gated."""
    if job.secret is None:
        return None
    if trigger.has_secret(job.secret):
        return RealPublish(credential=trigger.secret_value(job.secret))
    return DryRun(reason=f"secret {job.secret} not set")


class Publisher(Protocol):
    def publish(self, mode: PublishMode, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        ...


class CommandPublisher:
    """
    Publish by shelling out to the package tool, e.g.:

        CommandPublisher(
            real='cargo publish --all-features --token "$CRATES_TOKEN"',
            dry_run="cargo publish --all-features --dry-run",
            credential_env="CRATES_TOKEN",
        )

    The credential only ever travels through the child's environment.
    """

    def __init__(
        self,
        real: str,
        dry_run: str,
        *,
        credential_env: str = "PUBLISH_TOKEN",
        cwd: str | Path = ".",
    ):
        self.real = real
        self.dry_run = dry_run
        self.credential_env = credential_env
        self.cwd = Path(cwd)

    def publish(self, mode: PublishMode, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        extra = {}
        if isinstance(mode, RealPublish):
            cmd = self.real
            extra[self.credential_env] = mode.credential or ""
        else:
            cmd = self.dry_run

        proc = run_shell(cmd, job=request.job, cwd=self.cwd.resolve(), env=task_env(request, extra), ctx=ctx)
        if proc.returncode != 0:
            tail = (proc.stderr or proc.stdout or "")[-4000:]
            return TaskResult.failure(f"{mode.label} publish failed: {tail}".rstrip(), exit_code=proc.returncode)
        return TaskResult.success()


class PublishTask:
    """Task wrapper that hands the pre-resolved publish mode to a publisher."""

    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def run(self, request: TaskRequest, ctx: TaskContext) -> TaskResult:
        mode = ctx.publish_mode if ctx.publish_mode is not None else DryRun(reason="job is not secret-gated")
        result = self.publisher.publish(mode, request, ctx)
        result.outputs.setdefault("publish_mode", mode.label)
        return result
