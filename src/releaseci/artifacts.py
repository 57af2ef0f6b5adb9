# artifacts.py
from __future__ import annotations

import hashlib
import json
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import DuplicateArtifactError, NotFoundError, check_name
from .model import Artifact, Locator

# ---------------------------------------------------------------------
# One store per run. Blobs are immutable once published.
#
# In-memory by default. With a root directory blobs land on disk:
#   root/
#     <run_id>/
#       manifest.json
#       <job>/<name>
#
# Visibility: a job's artifacts become resolvable only after the job is
# marked completed, and `resolve` can be narrowed to a set of producers
# (the caller's ancestors) so siblings and descendants are never read.
# ---------------------------------------------------------------------


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


class ArtifactStore:
    def __init__(self, run_id: str, root: str | Path | None = None):
        self.run_id = run_id
        self.root = Path(root).resolve() if root is not None else None
        self._lock = threading.RLock()
        self._artifacts: Dict[Tuple[str, str], Artifact] = {}
        self._blobs: Dict[Tuple[str, str], bytes] = {}
        self._order: List[Tuple[str, str]] = []
        self._completed: List[str] = []

        if self.root is not None:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    @property
    def run_dir(self) -> Path:
        if self.root is None:
            raise RuntimeError("in-memory store has no run directory")
        return self.root / self.run_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def publish(
        self,
        job: str,
        name: str,
        content: Union[bytes, str],
        outputs: Optional[Mapping[str, str]] = None,
    ) -> Locator:
        check_name("job", job)
        check_name("artifact", name)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        key = (job, name)

        with self._lock:
            if key in self._artifacts:
                raise DuplicateArtifactError(job=job, name=name)

            if self.root is not None:
                path = self._write_blob(job, name, data)
                uri = path.as_uri()
            else:
                self._blobs[key] = data
                uri = f"mem://{self.run_id}/{job}/{name}"

            locator = Locator(
                run_id=self.run_id,
                job=job,
                name=name,
                uri=uri,
                digest=_sha256_bytes(data),
                size=len(data),
            )
            self._artifacts[key] = Artifact(locator=locator, outputs=dict(outputs or {}))
            self._order.append(key)
            if self.root is not None:
                self._write_manifest()
            return locator

    def _write_blob(self, job: str, name: str, data: bytes) -> Path:
        dest = self.run_dir / job / name
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(dest)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return dest

    def _write_manifest(self) -> None:
        manifest = {
            "run_id": self.run_id,
            "completed": list(self._completed),
            "artifacts": [
                {**self._artifacts[k].locator.to_dict(), "outputs": dict(self._artifacts[k].outputs)}
                for k in self._order
            ],
        }
        (self.run_dir / "manifest.json").write_text(_json_dumps_stable(manifest), encoding="utf-8")

    def mark_completed(self, job: str) -> None:
        """Make everything `job` published visible to `resolve`."""
        with self._lock:
            if job not in self._completed:
                self._completed.append(job)
                if self.root is not None:
                    self._write_manifest()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve(
        self,
        name: str,
        *,
        producers: Optional[Sequence[str]] = None,
        requester: Optional[str] = None,
    ) -> Locator:
        """
        Locate artifact `name` (or `job/name`) among completed producers.

        `producers` restricts the search and sets precedence: the first
        listed producer that published the name wins. Without it, completed
        jobs are searched in completion order.
        """
        return self.get(name, producers=producers, requester=requester).locator

    def get(
        self,
        name: str,
        *,
        producers: Optional[Sequence[str]] = None,
        requester: Optional[str] = None,
    ) -> Artifact:
        producer, _, short = name.rpartition("/")
        with self._lock:
            candidates = list(producers) if producers is not None else list(self._completed)
            if producer:
                candidates = [c for c in candidates if c == producer]
            for job in candidates:
                if job not in self._completed:
                    continue
                art = self._artifacts.get((job, short))
                if art is not None:
                    return art
        raise NotFoundError(name=name, requester=requester)

    def read(self, locator: Locator) -> bytes:
        key = (locator.job, locator.name)
        with self._lock:
            if locator.run_id != self.run_id or key not in self._artifacts:
                raise NotFoundError(name=f"{locator.job}/{locator.name}")
            if self.root is None:
                return self._blobs[key]
        return (self.run_dir / locator.job / locator.name).read_bytes()

    def published_by(self, job: str) -> List[str]:
        with self._lock:
            return [n for (j, n) in self._order if j == job]

    def locators(self) -> Dict[str, Locator]:
        """name -> locator for every published artifact; the earliest publisher keeps a shared name."""
        out: Dict[str, Locator] = {}
        with self._lock:
            for key in self._order:
                out.setdefault(key[1], self._artifacts[key].locator)
        return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    @staticmethod
    def prune(root: str | Path, keep: int = 5) -> List[Path]:
        """
        Keep only the newest `keep` run directories under `root`.
        Uses the manifest mtime as "newest". Returns removed directories.
        """
        base = Path(root)
        if not base.exists():
            return []
        runs = [d for d in base.iterdir() if d.is_dir()]

        def mtime(d: Path) -> float:
            man = d / "manifest.json"
            return (man if man.exists() else d).stat().st_mtime

        runs.sort(key=mtime, reverse=True)
        removed = []
        for d in runs[max(keep, 0):]:
            shutil.rmtree(d, ignore_errors=True)
            removed.append(d)
        return removed
