# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .dag import DependencyGraph
from .errors import WorkflowLoadError
from .model import Job

DEFAULT_WORKFLOW = "releaseci_workflow.py"


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """releaseci_workflow.py first, then any other *_workflow.py in `directory`."""
    current_dir = Path(directory)
    workflow_files = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(current_dir.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)

    return workflow_files


def load_workflow(path: str | Path) -> DependencyGraph:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> DependencyGraph | List[Job]
      - JOBS = [Job, ...]

    The graph is validated before it is returned.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(path=str(wf_path), message="workflow file not found")
    if wf_path.suffix != ".py":
        raise WorkflowLoadError(path=str(wf_path), message=f"workflow must be a .py file, got: {wf_path.name}")

    module_name = f"releaseci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    path=str(wf_path),
                    message=(
                        "workflow() is being called with arguments (name collision with the helper). "
                        "Use `wf` instead: `from releaseci import wf, job, sh` then "
                        "`def workflow(): return wf(job(...), job(...))`"
                    ),
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]
    else:
        raise WorkflowLoadError(path=str(wf_path), message="define workflow() or JOBS")

    if isinstance(jobs, DependencyGraph):
        graph = jobs
    elif isinstance(jobs, list) and all(isinstance(j, Job) for j in jobs):
        graph = DependencyGraph(jobs)
    else:
        raise WorkflowLoadError(
            path=str(wf_path),
            message="workflow must return a DependencyGraph or a List[Job]",
        )

    graph.validate()
    return graph
