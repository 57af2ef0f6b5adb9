from __future__ import annotations

from releaseci.gates import (
    AnyOf,
    GateContext,
    GateEvaluator,
    RefMatches,
    SecretPresent,
    TriggerIs,
    UpstreamOutcome,
    describe,
    on_tag,
)
from releaseci.model import Job, JobState, TriggerEvent, TriggerKind
from releaseci.publish import DryRun, RealPublish


def _ctx(kind="tag-push", ref="refs/tags/v1.2.3", secrets=None):
    return GateContext(trigger=TriggerEvent(kind=kind, ref=ref, secrets=secrets or {}))


def test_on_tag_matches_version_tag_pushes_only():
    cond = on_tag("v*")
    assert cond(_ctx())
    assert not cond(_ctx(kind="dispatch"))
    assert not cond(_ctx(ref="refs/tags/release-1"))
    assert not cond(_ctx(ref="refs/heads/v1"))


def test_ref_regex():
    assert RefMatches(r"^refs/tags/v\d+\.\d+\.\d+$", regex=True)(_ctx())
    assert not RefMatches(r"-rc", regex=True)(_ctx())


def test_condition_composition():
    dispatch_or_tag = TriggerIs((TriggerKind.DISPATCH,)) | on_tag()
    assert dispatch_or_tag(_ctx(kind="dispatch", ref="refs/heads/main"))
    assert dispatch_or_tag(_ctx())
    assert not dispatch_or_tag(_ctx(kind="pull-request", ref="refs/pull/1/merge"))

    no_token = ~SecretPresent("CRATES_TOKEN")
    assert no_token(_ctx())
    assert not no_token(_ctx(secrets={"CRATES_TOKEN": "abc"}))
    assert no_token(_ctx(secrets={"CRATES_TOKEN": ""}))

    assert isinstance(dispatch_or_tag, AnyOf)
    assert "event in [dispatch]" in describe(dispatch_or_tag)


def test_plain_callables_are_conditions():
    def only_main(ctx):
        return ctx.trigger.ref == "refs/heads/main"

    ev = GateEvaluator()
    j = Job("docs", condition=only_main)
    assert ev.evaluate(j, TriggerEvent("dispatch", ref="refs/heads/main"), {})
    decision = ev.decide(j, TriggerEvent("dispatch", ref="refs/heads/dev"), {})
    assert not decision
    assert "only_main" in decision.reason


def test_failed_upstream_skips_with_upstream_failure():
    ev = GateEvaluator()
    j = Job("release", needs=["check"])
    for state in (JobState.FAILURE, JobState.CANCELLED):
        decision = ev.decide(j, TriggerEvent("tag-push"), {"check": state})
        assert not decision.run
        assert decision.upstream_failure


def test_skip_caused_by_failure_keeps_propagating():
    ev = GateEvaluator()
    j = Job("publish", needs=["release"])
    upstream = {"release": UpstreamOutcome(JobState.SKIPPED, failed_upstream=True)}
    decision = ev.decide(j, TriggerEvent("tag-push"), upstream)
    assert not decision.run
    assert decision.upstream_failure


def test_gate_skipped_upstream_is_a_neutral_skip():
    ev = GateEvaluator()
    j = Job("cargo-publish", needs=["tag_release_artifacts"])
    decision = ev.decide(j, TriggerEvent("dispatch"), {"tag_release_artifacts": "skipped"})
    assert not decision.run
    assert not decision.upstream_failure


def test_optional_upstream_skip_is_satisfied():
    ev = GateEvaluator()
    j = Job("release", needs=["docs"])
    upstream = {"docs": UpstreamOutcome(JobState.SKIPPED, optional=True)}
    assert ev.evaluate(j, TriggerEvent("dispatch"), upstream)


def test_always_run_ignores_upstream_failures_but_not_conditions():
    ev = GateEvaluator()
    j = Job("notify", needs=["check"], always_run=True)
    assert ev.evaluate(j, TriggerEvent("dispatch"), {"check": JobState.FAILURE})

    gated = Job("notify", needs=["check"], always_run=True, condition=on_tag())
    assert not ev.evaluate(gated, TriggerEvent("dispatch"), {"check": JobState.FAILURE})


def test_failed_upstream_wins_regardless_of_needs_order():
    ev = GateEvaluator()
    upstream = {
        "tag": UpstreamOutcome(JobState.SKIPPED),
        "flaky": UpstreamOutcome(JobState.FAILURE, optional=True),
    }
    for needs in (["tag", "flaky"], ["flaky", "tag"]):
        decision = ev.decide(Job("final", needs=needs), TriggerEvent("dispatch"), upstream)
        assert not decision.run
        assert decision.upstream_failure
        assert decision.reason == "upstream 'flaky' failure"


def test_unfinished_upstream_is_not_ready():
    ev = GateEvaluator()
    j = Job("release", needs=["check"])
    assert not ev.evaluate(j, TriggerEvent("dispatch"), {"check": JobState.RUNNING})
    assert not ev.evaluate(j, TriggerEvent("dispatch"), {})


def test_publish_mode_follows_secret_presence():
    ev = GateEvaluator()
    j = Job("cargo-publish", secret="CRATES_TOKEN")

    mode = ev.publish_mode(j, TriggerEvent("tag-push", secrets={"CRATES_TOKEN": "s3cr3t"}))
    assert isinstance(mode, RealPublish)
    assert mode.label == "real"
    assert mode.credential == "s3cr3t"
    assert "s3cr3t" not in repr(mode)

    for secrets in ({}, {"CRATES_TOKEN": ""}):
        mode = ev.publish_mode(j, TriggerEvent("tag-push", secrets=secrets))
        assert isinstance(mode, DryRun)
        assert mode.label == "dry-run"

    assert ev.publish_mode(Job("check"), TriggerEvent("tag-push")) is None
