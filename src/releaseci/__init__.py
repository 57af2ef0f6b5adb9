from .dsl import job, sh, matrix, wf, workflow, JobBuilder, build, publish_job, on_event, has_secret, succeeded, failed
from .dag import DependencyGraph
from .gates import GateEvaluator, on_tag
from .model import Job, JobState, RunOutcome, RunResult, Step, TaskRequest, TaskResult, TriggerEvent, TriggerKind
from .runner import RunCoordinator, plan_run, run_graph

__all__ = [
    "job",
    "sh",
    "matrix",
    "wf",
    "workflow",
    "JobBuilder",
    "build",
    "publish_job",
    "on_event",
    "on_tag",
    "has_secret",
    "succeeded",
    "failed",
    "DependencyGraph",
    "GateEvaluator",
    "Job",
    "JobState",
    "RunOutcome",
    "RunResult",
    "Step",
    "TaskRequest",
    "TaskResult",
    "TriggerEvent",
    "TriggerKind",
    "RunCoordinator",
    "plan_run",
    "run_graph",
]
