from __future__ import annotations

import threading
import time

import pytest

from releaseci import TriggerEvent, job, on_tag, sh, wf
from releaseci.errors import ConcurrencyConflict, UnknownDependencyError
from releaseci.model import Job, JobState, RunOutcome, TaskResult
from releaseci.runner import ConcurrencyRegistry, RunCoordinator, plan_run, run_graph
from releaseci.settings import Settings
from releaseci.tasks import ShellTask

TAG = TriggerEvent("tag-push", ref="refs/tags/v1.2.3")


def ok(request, ctx):
    return None


def fail(request, ctx):
    return TaskResult.failure("tests failed", exit_code=101)


def test_outputs_flow_to_direct_dependents():
    seen = {}

    def check(request, ctx):
        return {"test_results_url": "https://ci/results"}

    def release(request, ctx):
        seen.update(request.inputs)

    result = run_graph(wf(job("check", task=check), job("release", task=release, needs=["check"])), TAG)

    assert result.outcome is RunOutcome.SUCCESS
    assert seen["needs.check.outputs.test_results_url"] == "https://ci/results"
    assert seen["event"] == "tag-push"
    assert seen["ref_name"] == "v1.2.3"
    assert result.outputs["check"] == {"test_results_url": "https://ci/results"}


def test_failure_skips_descendants_and_fails_the_run():
    graph = wf(
        job("a", task=fail),
        job("b", task=ok, needs=["a"]),
        job("c", task=ok, needs=["b"]),
    )
    result = run_graph(graph, TAG)

    assert result.jobs == {"a": JobState.FAILURE, "b": JobState.SKIPPED, "c": JobState.SKIPPED}
    assert result.outcome is RunOutcome.FAILURE
    assert "exit=101" in result.errors["a"]
    assert "upstream 'a' failure" in result.reasons["b"]


def test_task_exception_is_a_job_failure():
    def boom(request, ctx):
        raise RuntimeError("disk full")

    result = run_graph(wf(job("a", task=boom), job("b", task=ok)), TAG)

    assert result.jobs["a"] is JobState.FAILURE
    assert result.jobs["b"] is JobState.SUCCESS
    assert "RuntimeError: disk full" in result.errors["a"]


def test_always_run_job_runs_after_failure():
    graph = wf(job("a", task=fail), job("report", task=ok, needs=["a"], always_run=True))
    result = run_graph(graph, TAG)
    assert result.jobs["report"] is JobState.SUCCESS
    assert result.outcome is RunOutcome.FAILURE


def test_optional_job_failure_does_not_fail_the_run():
    graph = wf(job("flaky", task=fail, required=False), job("other", task=ok))
    assert run_graph(graph, TAG).outcome is RunOutcome.SUCCESS


def test_gate_skips_are_neutral():
    graph = wf(
        job("check", task=ok),
        job("tag_release_artifacts", task=ok, needs=["check"], when=on_tag()),
        job("cargo-publish", task=ok, needs=["tag_release_artifacts"]),
    )
    result = run_graph(graph, TriggerEvent("dispatch", ref="refs/heads/main"))

    assert result.jobs == {
        "check": JobState.SUCCESS,
        "tag_release_artifacts": JobState.SKIPPED,
        "cargo-publish": JobState.SKIPPED,
    }
    assert result.outcome is RunOutcome.SUCCESS


def test_timeout_fails_the_job_and_signals_the_task():
    stopped = threading.Event()

    def hang(request, ctx):
        ctx.cancel_event.wait(10)
        stopped.set()

    graph = wf(job("slow", task=hang, timeout=0.2), job("after", task=ok, needs=["slow"]))
    result = run_graph(graph, TAG, poll_interval=0.01)

    assert result.jobs == {"slow": JobState.FAILURE, "after": JobState.SKIPPED}
    assert "time limit" in result.errors["slow"]
    assert result.reasons["slow"] == "timeout"
    assert stopped.wait(5)


def test_declared_artifact_must_be_published():
    graph = wf(job("release", task=ok, artifacts=["quality-artifacts-manifest"]))
    result = run_graph(graph, TAG)
    assert result.jobs["release"] is JobState.FAILURE
    assert "quality-artifacts-manifest" in result.errors["release"]
    assert result.reasons["release"] == "contract-violation"


def test_artifacts_resolve_from_ancestors():
    got = {}

    def licenses(request, ctx):
        return TaskResult.success(artifacts=[("license-report", b"<html/>", {"artifact-url": "u"})])

    def tag(request, ctx):
        got.update(request.artifacts)

    graph = wf(
        job("licenses", task=licenses, artifacts=["license-report"]),
        job("release", task=ok, needs=["licenses"]),
        job("tag", task=tag, needs=["release"], consumes=["license-report"]),
    )
    result = run_graph(graph, TAG)

    assert result.outcome is RunOutcome.SUCCESS
    assert got["license-report"].job == "licenses"
    assert got["license-report"].uri.startswith("mem://")
    assert result.artifacts["license-report"] is got["license-report"]


def test_duplicate_artifact_from_one_task_fails_the_job():
    def twice(request, ctx):
        return TaskResult.success(artifacts=[("r", b"1"), ("r", b"2")])

    result = run_graph(wf(job("a", task=twice)), TAG)
    assert result.jobs["a"] is JobState.FAILURE
    assert result.reasons["a"] == "duplicate-artifact"


def test_coordinator_rejects_invalid_graph():
    with pytest.raises(UnknownDependencyError):
        RunCoordinator(wf(job("a", task=ok, needs=["missing"])))


def test_group_key_prefers_head_ref():
    c = RunCoordinator(wf(job("a", task=ok)))
    assert c.group_key(TAG) == "release-refs/tags/v1.2.3"
    pr = TriggerEvent("pull-request", ref="refs/pull/7/merge", head_ref="feature/x")
    assert c.group_key(pr) == "release-feature/x"


def _blocking_first_call():
    """Task whose first invocation blocks until cancelled; later ones succeed."""
    calls = []
    started = threading.Event()
    lock = threading.Lock()

    def task(request, ctx):
        with lock:
            calls.append(ctx.run_id)
            first = len(calls) == 1
        if first:
            started.set()
            ctx.cancel_event.wait(10)
            ctx.check_cancelled()

    return task, started


def test_newer_run_supersedes_in_progress_run():
    task, started = _blocking_first_call()
    coordinator = RunCoordinator(wf(job("build", task=task)), poll_interval=0.01)

    first = coordinator.submit(TAG)
    assert started.wait(5)
    second = coordinator.submit(TAG)

    r2 = second.wait(10)
    r1 = first.wait(10)

    assert second.superseded == first.id
    assert r1.outcome is RunOutcome.CANCELLED
    assert r1.jobs["build"] is JobState.CANCELLED
    assert r2.outcome is RunOutcome.SUCCESS
    assert len(coordinator.registry) == 0


def test_runs_in_different_groups_do_not_interfere():
    task, started = _blocking_first_call()
    coordinator = RunCoordinator(wf(job("build", task=task)), poll_interval=0.01)

    first = coordinator.submit(TAG)
    assert started.wait(5)
    other = coordinator.submit(TriggerEvent("tag-push", ref="refs/tags/v2.0.0"))

    assert other.wait(10).outcome is RunOutcome.SUCCESS
    assert other.superseded is None
    assert not first.done

    assert first.cancel()
    assert first.wait(10).outcome is RunOutcome.CANCELLED
    assert not first.cancel()


def test_conflict_when_cancel_in_progress_is_off():
    task, started = _blocking_first_call()
    registry = ConcurrencyRegistry()
    coordinator = RunCoordinator(
        wf(job("build", task=task)),
        registry=registry,
        cancel_in_progress=False,
        poll_interval=0.01,
    )

    first = coordinator.submit(TAG)
    assert started.wait(5)
    with pytest.raises(ConcurrencyConflict):
        coordinator.submit(TAG)
    assert registry.active("release-refs/tags/v1.2.3") is first.run

    first.cancel()
    first.wait(10)
    assert registry.active("release-refs/tags/v1.2.3") is None


def test_wait_times_out_on_a_running_run():
    task, started = _blocking_first_call()
    coordinator = RunCoordinator(wf(job("build", task=task)), poll_interval=0.01)
    handle = coordinator.submit(TAG)
    assert started.wait(5)

    with pytest.raises(TimeoutError):
        handle.wait(0.05)

    handle.cancel()
    handle.wait(10)
    assert coordinator.get(handle.id) is handle.run


def test_file_backed_runs_are_pruned(tmp_path):
    coordinator = RunCoordinator(
        wf(job("a", task=ok)),
        settings=Settings(retention_runs=2),
        artifact_root=tmp_path,
    )
    for _ in range(3):
        coordinator.run(TAG, timeout=10)
    assert len([d for d in tmp_path.iterdir() if d.is_dir()]) == 2


def test_plan_reports_gate_skips():
    graph = wf(
        job("check", task=ok),
        job("tag", task=ok, needs=["check"], when=on_tag()),
        job("publish", task=ok, needs=["tag"]),
    )
    plan = plan_run(graph, TriggerEvent("dispatch"))
    assert plan[0] == [("check", None)]
    assert plan[1][0][0] == "tag"
    assert plan[1][0][1].startswith("condition not met")
    assert plan[2] == [("publish", "upstream 'tag' skipped")]

    assert all(reason is None for wave in plan_run(graph, TAG) for _, reason in wave)


def test_job_model_defaults():
    j = Job("x")
    assert j.required and not j.always_run and j.secret is None


def test_queued_job_timeout_starts_when_a_worker_picks_it_up():
    def slow(request, ctx):
        time.sleep(0.3)

    graph = wf(job("a", task=slow, timeout=0.5), job("b", task=slow, timeout=0.5))
    result = run_graph(graph, TAG, max_workers=1, poll_interval=0.01)

    assert result.jobs == {"a": JobState.SUCCESS, "b": JobState.SUCCESS}
    assert result.outcome is RunOutcome.SUCCESS


@pytest.mark.parametrize("needs", [["gated", "flaky"], ["flaky", "gated"]])
def test_upstream_failure_outranks_a_gate_skip(needs):
    graph = wf(
        job("gated", task=ok, when=on_tag()),
        job("flaky", task=fail, required=False),
        job("final", task=ok, needs=needs),
    )
    result = run_graph(graph, TriggerEvent("dispatch", ref="refs/heads/main"))

    assert result.jobs["final"] is JobState.SKIPPED
    assert result.reasons["final"] == "upstream 'flaky' failure"
    assert result.outcome is RunOutcome.FAILURE


def test_artifact_name_cannot_leave_the_run_directory(tmp_path):
    def escape(request, ctx):
        return TaskResult.success(artifacts=[("../../escaped.txt", b"x")])

    coordinator = RunCoordinator(wf(job("a", task=escape)), artifact_root=tmp_path)
    result = coordinator.run(TAG, timeout=10)

    assert result.jobs["a"] is JobState.FAILURE
    assert result.reasons["a"] == "invalid-name"
    assert [p.name for p in tmp_path.iterdir()] == [result.run_id]
    assert not (tmp_path.parent / "escaped.txt").exists()


def test_shell_steps_read_consumed_artifacts_from_files(tmp_path):
    def produce(request, ctx):
        return TaskResult.success(artifacts=[("license-report", b"<html>MIT</html>")])

    consumer = ShellTask(
        [sh("Copy", 'cp "$ARTIFACT_LICENSE_REPORT_PATH" report.html')],
        publish={"staged": "report.html"},
        repo_root=tmp_path,
    )
    graph = wf(
        job("licenses", task=produce, artifacts=["license-report"]),
        job("stage", task=consumer, needs=["licenses"], consumes=["license-report"], artifacts=["staged"]),
    )
    result = run_graph(graph, TAG)

    assert result.outcome is RunOutcome.SUCCESS, result.errors
    assert (tmp_path / "report.html").read_bytes() == b"<html>MIT</html>"


def test_finished_runs_beyond_the_history_are_forgotten():
    coordinator = RunCoordinator(wf(job("a", task=ok)), settings=Settings(run_history=2))
    ids = [coordinator.run(TAG, timeout=10).run_id for _ in range(4)]

    assert [r.id for r in coordinator.runs] == ids[2:]
    with pytest.raises(KeyError):
        coordinator.get(ids[0])


def test_group_locks_are_dropped_after_release():
    registry = ConcurrencyRegistry()
    coordinator = RunCoordinator(wf(job("a", task=ok)), registry=registry)
    coordinator.run(TAG, timeout=10)
    coordinator.run(TriggerEvent("tag-push", ref="refs/tags/v2.0.0"), timeout=10)

    assert len(registry) == 0
    assert registry.groups == []


def test_run_history_reads_from_environment():
    assert Settings().run_history == 20
    assert Settings.from_env({"RELEASECI_RUN_HISTORY": "3"}).run_history == 3
