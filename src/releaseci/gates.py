"""
Gate conditions and the evaluator that decides whether a job runs.

A condition is any callable taking a `GateContext` and returning a bool.
The classes below cover the trigger facts a release pipeline gates on
(event kind, ref pattern, secret presence, upstream outcomes) and compose
with `&`, `|` and `~`. Evaluation is pure: it reads the trigger and the
upstream states and never touches anything else.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

from .model import TAG_REF_PREFIX, Job, JobState, TriggerEvent, TriggerKind
from .publish import PublishMode, resolve_publish_mode


@dataclass(frozen=True)
class UpstreamOutcome:
    """Terminal state of a dependency, as seen by its dependents."""
    state: JobState
    optional: bool = False
    failed_upstream: bool = False


@dataclass(frozen=True)
class GateContext:
    trigger: TriggerEvent
    upstream: Mapping[str, UpstreamOutcome] = field(default_factory=dict)

    def state_of(self, job: str) -> Optional[JobState]:
        out = self.upstream.get(job)
        return out.state if out else None


@dataclass(frozen=True)
class GateDecision:
    run: bool
    reason: str = ""
    upstream_failure: bool = False

    def __bool__(self) -> bool:
        return self.run


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------

class Condition:
    def __call__(self, ctx: GateContext) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        return type(self).__name__

    def __and__(self, other: Condition) -> Condition:
        return AllOf((self, other))

    def __or__(self, other: Condition) -> Condition:
        return AnyOf((self, other))

    def __invert__(self) -> Condition:
        return Not(self)


@dataclass(frozen=True)
class TriggerIs(Condition):
    kinds: Tuple[TriggerKind, ...]

    def __call__(self, ctx: GateContext) -> bool:
        return ctx.trigger.kind in self.kinds

    def describe(self) -> str:
        return "event in [" + ", ".join(k.value for k in self.kinds) + "]"


@dataclass(frozen=True)
class RefMatches(Condition):
    """Glob match on the full ref, or a regex search when `regex` is set."""
    pattern: str
    regex: bool = False

    def __call__(self, ctx: GateContext) -> bool:
        if self.regex:
            return re.search(self.pattern, ctx.trigger.ref) is not None
        return fnmatchcase(ctx.trigger.ref, self.pattern)

    def describe(self) -> str:
        return f"ref ~ {self.pattern}"


@dataclass(frozen=True)
class SecretPresent(Condition):
    name: str

    def __call__(self, ctx: GateContext) -> bool:
        return ctx.trigger.has_secret(self.name)

    def describe(self) -> str:
        return f"secret {self.name}"


@dataclass(frozen=True)
class UpstreamIs(Condition):
    job: str
    states: Tuple[JobState, ...] = (JobState.SUCCESS,)

    def __call__(self, ctx: GateContext) -> bool:
        return ctx.state_of(self.job) in self.states

    def describe(self) -> str:
        return f"{self.job} is " + "|".join(s.value for s in self.states)


@dataclass(frozen=True)
class AllOf(Condition):
    parts: Tuple[Callable[[GateContext], bool], ...]

    def __call__(self, ctx: GateContext) -> bool:
        return all(p(ctx) for p in self.parts)

    def describe(self) -> str:
        return "(" + " and ".join(describe(p) for p in self.parts) + ")"


@dataclass(frozen=True)
class AnyOf(Condition):
    parts: Tuple[Callable[[GateContext], bool], ...]

    def __call__(self, ctx: GateContext) -> bool:
        return any(p(ctx) for p in self.parts)

    def describe(self) -> str:
        return "(" + " or ".join(describe(p) for p in self.parts) + ")"


@dataclass(frozen=True)
class Not(Condition):
    part: Callable[[GateContext], bool]

    def __call__(self, ctx: GateContext) -> bool:
        return not self.part(ctx)

    def describe(self) -> str:
        return f"not {describe(self.part)}"


def on_tag(pattern: str = "v*") -> Condition:
    """Only on tag pushes whose tag name matches `pattern` (default: version tags)."""
    return AllOf((TriggerIs((TriggerKind.TAG_PUSH,)), RefMatches(TAG_REF_PREFIX + pattern)))


def describe(cond: Callable[[GateContext], bool]) -> str:
    if isinstance(cond, Condition):
        return cond.describe()
    return getattr(cond, "__name__", repr(cond))


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------

_FAILED = (JobState.FAILURE, JobState.CANCELLED)


def _normalize(upstream: Mapping[str, Union[UpstreamOutcome, JobState, str]]) -> Dict[str, UpstreamOutcome]:
    out: Dict[str, UpstreamOutcome] = {}
    for name, value in upstream.items():
        out[name] = value if isinstance(value, UpstreamOutcome) else UpstreamOutcome(JobState(value))
    return out


class GateEvaluator:
    """Decides, from terminal upstream states and the trigger, whether a job runs."""

    def decide(
        self,
        job: Job,
        trigger: TriggerEvent,
        upstream: Mapping[str, Union[UpstreamOutcome, JobState, str]],
    ) -> GateDecision:
        outcomes = _normalize(upstream)

        failed: list[tuple[str, JobState]] = []
        skipped: list[str] = []
        for dep in job.needs:
            out = outcomes.get(dep)
            if out is None or not out.state.terminal:
                return GateDecision(False, f"upstream '{dep}' has not finished")
            if out.state in _FAILED or (out.state is JobState.SKIPPED and out.failed_upstream):
                failed.append((dep, out.state))
            elif out.state is JobState.SKIPPED and not out.optional:
                skipped.append(dep)

        # a failure anywhere upstream outranks a neutral skip, whatever the order of `needs`
        if not job.always_run:
            if failed:
                dep, state = failed[0]
                return GateDecision(False, f"upstream '{dep}' {state.value}", upstream_failure=True)
            if skipped:
                return GateDecision(False, f"upstream '{skipped[0]}' skipped")

        if job.condition is not None:
            ctx = GateContext(trigger=trigger, upstream=outcomes)
            if not job.condition(ctx):
                return GateDecision(False, f"condition not met: {describe(job.condition)}")

        return GateDecision(True)

    def evaluate(
        self,
        job: Job,
        trigger: TriggerEvent,
        upstream: Mapping[str, Union[UpstreamOutcome, JobState, str]],
    ) -> bool:
        return self.decide(job, trigger, upstream).run

    def publish_mode(self, job: Job, trigger: TriggerEvent) -> Optional[PublishMode]:
        """Secret-gated jobs: real publish with the credential, or a dry run without it."""
        return resolve_publish_mode(job, trigger)
