from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    workflow: str = "releaseci_workflow.py"
    artifact_dir: Optional[str] = None
    max_workers: int = _default_workers()
    job_timeout: float = 3600.0
    retention_runs: int = 5
    run_history: int = 20
    concurrency_group: str = "release-{ref}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            workflow=env.get("RELEASECI_WORKFLOW", cls.workflow),
            artifact_dir=env.get("RELEASECI_ARTIFACT_DIR") or None,
            max_workers=int(env.get("RELEASECI_MAX_WORKERS", _default_workers())),
            job_timeout=float(env.get("RELEASECI_JOB_TIMEOUT", cls.job_timeout)),
            retention_runs=int(env.get("RELEASECI_RETENTION_RUNS", cls.retention_runs)),
            run_history=int(env.get("RELEASECI_RUN_HISTORY", cls.run_history)),
            concurrency_group=env.get("RELEASECI_CONCURRENCY_GROUP", cls.concurrency_group),
        )
