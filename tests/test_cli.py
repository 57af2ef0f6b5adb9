from __future__ import annotations

import json
import textwrap

import pytest
from click.testing import CliRunner

from releaseci.cli import build_trigger, cli
from releaseci.model import TriggerKind

WORKFLOW = """
from releaseci import wf, job, on_tag, publish_job
from releaseci.model import TaskResult
from releaseci.publish import PublishTask


class EchoPublisher:
    def publish(self, mode, request, ctx):
        return TaskResult.success(outputs={"mode": mode.label})


def workflow():
    return wf(
        job("check", task=lambda request, ctx: {"test_results_url": "file:///results"}),
        job("release", task=lambda request, ctx: None, needs=["check"]),
        job("tag_release_artifacts", task=lambda request, ctx: None, needs=["release"], when=on_tag("v*")),
        job("cargo-publish", task=PublishTask(EchoPublisher()), needs=["tag_release_artifacts"], secret="CRATES_TOKEN"),
    )
"""

FAILING = """
from releaseci import wf, job
from releaseci.model import TaskResult

JOBS = [
    job("check", task=lambda request, ctx: TaskResult.failure("3 tests failed", exit_code=101)),
    job("release", task=lambda request, ctx: None, needs=["check"]),
]
"""


@pytest.fixture
def write_workflow(tmp_path):
    def write(body: str, name: str = "releaseci_workflow.py"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return str(path)

    return write


def test_run_tag_push_dry_run_succeeds(write_workflow, monkeypatch):
    monkeypatch.delenv("CRATES_TOKEN", raising=False)
    path = write_workflow(WORKFLOW)
    result = CliRunner().invoke(
        cli,
        ["--quiet", "run", "--workflow", path, "--ref", "refs/tags/v1.2.3", "--secret", "CRATES_TOKEN", "--json"],
    )
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["outcome"] == "success"
    assert data["trigger"]["kind"] == "tag-push"
    assert data["publish_modes"] == {"cargo-publish": "dry-run"}
    assert data["outputs"]["cargo-publish"]["mode"] == "dry-run"


def test_run_reads_secret_from_environment(write_workflow, monkeypatch):
    monkeypatch.setenv("CRATES_TOKEN", "tok")
    path = write_workflow(WORKFLOW)
    result = CliRunner().invoke(
        cli,
        ["--quiet", "run", "--workflow", path, "--ref", "refs/tags/v1.2.3", "--secret", "CRATES_TOKEN", "--json"],
    )
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["publish_modes"] == {"cargo-publish": "real"}
    assert data["trigger"]["secrets"] == ["CRATES_TOKEN"]
    assert "tok" not in result.output.replace("TOKEN", "")


def test_run_prints_progress_and_results(write_workflow):
    path = write_workflow(WORKFLOW)
    result = CliRunner().invoke(cli, ["run", "--workflow", path, "--event", "dispatch", "--ref", "refs/heads/main"])
    assert result.exit_code == 0, result.output
    assert "RUN STARTED" in result.output
    assert "Concurrency group: release-refs/heads/main" in result.output
    assert "JOB SKIPPED: tag_release_artifacts" in result.output
    assert "OUTCOME: SUCCESS" in result.output


def test_failed_run_exits_nonzero(write_workflow):
    path = write_workflow(FAILING, name="failing_workflow.py")
    result = CliRunner().invoke(cli, ["--quiet", "run", "--workflow", path, "--ref", "refs/tags/v1.0.0"])
    assert result.exit_code == 1
    assert "OUTCOME: FAILURE" in result.output


def test_plan_shows_waves_and_skips(write_workflow):
    path = write_workflow(WORKFLOW)
    result = CliRunner().invoke(cli, ["plan", "--workflow", path, "--event", "dispatch", "--ref", "refs/heads/main"])
    assert result.exit_code == 0, result.output
    assert "Wave 1:" in result.output
    assert "  check" in result.output
    assert "tag_release_artifacts (skipped: condition not met" in result.output
    assert "cargo-publish (skipped: upstream 'tag_release_artifacts' skipped)" in result.output


def test_validate(write_workflow):
    ok_path = write_workflow(WORKFLOW)
    result = CliRunner().invoke(cli, ["validate", "--workflow", ok_path])
    assert result.exit_code == 0, result.output
    assert "OK: 4 job(s)" in result.output

    bad = write_workflow(
        """
        from releaseci import job
        JOBS = [job("a", task=lambda r, c: None, consumes=["license-report"])]
        """,
        name="bad_workflow.py",
    )
    result = CliRunner().invoke(cli, ["validate", "--workflow", bad])
    assert result.exit_code == 1
    assert "Invalid workflow" in result.output


def test_missing_workflow_file(tmp_path):
    result = CliRunner().invoke(cli, ["validate", "--workflow", str(tmp_path / "nope.py")])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.output


def test_build_trigger_defaults(monkeypatch):
    monkeypatch.setenv("CRATES_TOKEN", "tok")
    t = build_trigger(None, "refs/tags/v1.2.3", None, ("CRATES_TOKEN",))
    assert t.kind is TriggerKind.TAG_PUSH
    assert t.has_secret("CRATES_TOKEN")

    t = build_trigger(None, "refs/heads/main", "feature", ())
    assert t.kind is TriggerKind.DISPATCH
    assert t.head_ref == "feature"
