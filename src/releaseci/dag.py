# dag.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional, Set

from .errors import ArtifactWiringError, CycleError, DuplicateJobError, UnknownDependencyError, check_name
from .model import Job

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """
    The release graph: jobs stored in declaration order, edges as index sets.

    `add_job` may name dependencies that are declared later; such forward
    references are checked by `validate()` before any run starts. A job whose
    edges would close a cycle is rejected and the graph is left unchanged.
    """

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: List[Job] = []
        self._index: Dict[str, int] = {}
        for j in jobs:
            self.add_job(j)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_job(self, job: Job) -> Job:
        check_name("job", job.name)
        for artifact in job.artifacts:
            check_name("artifact", artifact)
        if job.name in self._index:
            raise DuplicateJobError(job=job.name)

        cycle = self._find_cycle(job)
        if cycle:
            raise CycleError(job=job.name, cycle=cycle)

        self._index[job.name] = len(self._jobs)
        self._jobs.append(job)
        return job

    def _find_cycle(self, new: Job) -> Optional[List[str]]:
        """DFS coloring over the graph as it would look with `new` added."""
        needs: Dict[str, List[str]] = {j.name: list(j.needs) for j in self._jobs}
        needs[new.name] = list(new.needs)

        color: Dict[str, int] = {}
        stack: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            color[name] = _GRAY
            stack.append(name)
            for dep in needs.get(name, ()):
                state = color.get(dep, _WHITE)
                if state == _GRAY:
                    return stack[stack.index(dep):]
                if state == _WHITE:
                    found = visit(dep)
                    if found:
                        return found
            stack.pop()
            color[name] = _BLACK
            return None

        # every pre-existing job is acyclic, so only paths through `new` can loop
        return visit(new.name)

    def validate(self) -> None:
        """Reject undeclared dependencies and unsatisfiable artifact consumption."""
        for j in self._jobs:
            for dep in j.needs:
                if dep not in self._index:
                    raise UnknownDependencyError(job=j.name, dependency=dep, known=list(self._index))

        for j in self._jobs:
            if not j.consumes:
                continue
            ancestors = self.ancestors(j.name)
            for wanted in j.consumes:
                producer, _, name = wanted.rpartition("/")
                candidates = [producer] if producer else ancestors
                if not any(
                    c in ancestors and name in self.get(c).artifacts
                    for c in candidates
                ):
                    raise ArtifactWiringError(name=wanted, requester=j.name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs)

    @property
    def names(self) -> List[str]:
        return [j.name for j in self._jobs]

    def get(self, name: str) -> Job:
        return self._jobs[self._index[name]]

    def index_of(self, name: str) -> int:
        return self._index[name]

    def edges(self) -> List[Set[int]]:
        """Dependency index sets, parallel to declaration order."""
        return [{self._index[d] for d in j.needs if d in self._index} for j in self._jobs]

    def dependents(self, name: str) -> List[str]:
        return [j.name for j in self._jobs if name in j.needs]

    def ancestors(self, name: str) -> List[str]:
        """Transitive dependencies of `name`, in declaration order."""
        edges = self.edges()
        seen: Set[int] = set()
        todo = list(edges[self._index[name]])
        while todo:
            i = todo.pop()
            if i in seen:
                continue
            seen.add(i)
            todo.extend(edges[i])
        return [self._jobs[i].name for i in sorted(seen)]

    def topological_schedule(self) -> List[List[str]]:
        """
        Ready sets: wave N holds the jobs whose dependencies all sit in
        earlier waves. Within a wave jobs keep declaration order.
        """
        self.validate()
        edges = self.edges()
        level: Dict[int, int] = {}

        def depth(i: int) -> int:
            if i not in level:
                level[i] = 1 + max((depth(d) for d in edges[i]), default=-1)
            return level[i]

        waves: List[List[str]] = []
        for i, j in enumerate(self._jobs):
            d = depth(i)
            while len(waves) <= d:
                waves.append([])
            waves[d].append(j.name)
        return waves
