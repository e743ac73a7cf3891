"""Runner behaviour: trigger gating, guard skipping, ordered fail-fast steps."""

from __future__ import annotations

from pathlib import Path

import pytest

from gatedci.dsl import job, on_push, sh, uses, wf
from gatedci.model import Event, RunStatus
from gatedci.runner import WorkflowRunner


def _runner(workflow, recorder, console, **kw) -> WorkflowRunner:
    return WorkflowRunner(workflow, actions=recorder.registry(), console=console, **kw)


def test_matching_event_runs_all_steps_in_order(docs_workflow, recorder, console) -> None:
    runner = _runner(docs_workflow, recorder, console)
    result = runner.run(Event(name="push", branch="main", repository="org/repo"))

    assert result is not None
    assert result.status is RunStatus.SUCCEEDED
    assert recorder.calls == ["Checkout", "Install toolchain", "Build docs", "Deploy"]
    assert result.steps_run == recorder.calls


def test_guard_false_skips_without_running_steps(docs_workflow, recorder, console) -> None:
    runner = _runner(docs_workflow, recorder, console)
    result = runner.run(Event(name="push", branch="main", repository="other/repo"))

    assert result is not None
    assert result.status is RunStatus.SKIPPED
    assert result.jobs[0].reason == "guard not satisfied: github.repository == 'org/repo'"
    assert recorder.calls == []


def test_untriggered_event_never_evaluates_guard(docs_workflow, recorder, console, monkeypatch) -> None:
    runner = _runner(docs_workflow, recorder, console)

    def boom(*_a, **_k):
        raise AssertionError("guard evaluated")

    monkeypatch.setattr(runner, "evaluate_guard", boom)
    assert runner.run(Event(name="pull_request", branch="main", repository="org/repo")) is None
    assert runner.run(Event(name="push", branch="dev", repository="org/repo")) is None
    assert recorder.calls == []


def test_failing_step_halts_remaining_steps(docs_workflow, recorder, console) -> None:
    recorder.fail_on.add("Install toolchain")
    runner = _runner(docs_workflow, recorder, console)
    result = runner.run(Event(name="push", branch="main", repository="org/repo"))

    assert result.status is RunStatus.FAILED
    assert recorder.calls == ["Checkout", "Install toolchain"]
    assert "Install toolchain exploded" in result.jobs[0].error


def test_failed_job_stops_later_jobs(recorder, console) -> None:
    recorder.fail_on.add("a1")
    workflow = wf(
        job("first", uses("a1", "test/record")),
        job("second", uses("b1", "test/record")),
        on=on_push(),
    )
    result = _runner(workflow, recorder, console).run(Event("push", "main", "o/r"))

    assert result.status is RunStatus.FAILED
    assert [j.name for j in result.jobs] == ["first"]
    assert recorder.calls == ["a1"]


def test_skipped_and_succeeded_jobs_report_succeeded(recorder, console) -> None:
    workflow = wf(
        job("never", uses("n", "test/record"), if_="false"),
        job("always", uses("y", "test/record")),
        on=on_push("main"),
    )
    result = _runner(workflow, recorder, console).run(Event("push", "main", "o/r"))

    assert result.status is RunStatus.SUCCEEDED
    assert [j.status for j in result.jobs] == [RunStatus.SKIPPED, RunStatus.SUCCEEDED]
    assert recorder.calls == ["y"]


def test_unknown_action_fails_step(console, recorder) -> None:
    workflow = wf(job("j", uses("mystery", "nobody/nothing@v1")), on=on_push())
    result = _runner(workflow, recorder, console).run(Event("push", "main", "o/r"))

    assert result.status is RunStatus.FAILED
    assert "no handler for action 'nobody/nothing'" in result.jobs[0].error


def test_invalid_guard_fails_as_setup_error(recorder, console) -> None:
    workflow = wf(job("j", uses("s", "test/record"), if_="github.repository =="), on=on_push())
    result = _runner(workflow, recorder, console).run(Event("push", "main", "o/r"))

    job_result = result.jobs[0]
    assert job_result.status is RunStatus.FAILED
    assert "invalid guard" in job_result.error
    assert job_result.steps_run == []
    assert recorder.calls == []


def test_action_inputs_are_interpolated_and_secrets_masked(recorder, console, capsys) -> None:
    recorder.fail_on.add("deploy")
    workflow = wf(
        job(
            "j",
            uses("deploy", "test/record", github_token="${{ secrets.GITHUB_TOKEN }}", dir="${{ env.OUT }}"),
        ),
        on=on_push(),
        env={"OUT": "./target/${{ github.ref_name }}"},
    )
    runner = _runner(workflow, recorder, console, secrets={"GITHUB_TOKEN": "s3cr3t"})
    runner.run(Event("push", "main", "o/r"))

    ctx = recorder.contexts[0]
    assert ctx.inputs == {"github_token": "s3cr3t", "dir": "./target/main"}
    assert ctx.env["OUT"] == "./target/main"
    assert "s3cr3t" not in capsys.readouterr().out


def test_dry_run_executes_nothing(tmp_path: Path, recorder, console) -> None:
    marker = tmp_path / "marker"
    workflow = wf(job("j", sh("touch", f"touch {marker}"), uses("r", "test/record")), on=on_push())
    result = _runner(workflow, recorder, console, workspace=tmp_path, dry_run=True).run(Event("push", "main", "o/r"))

    assert result.status is RunStatus.SUCCEEDED
    assert result.steps_run == ["touch", "r"]
    assert not marker.exists()
    assert recorder.calls == []


# ---------------------------------------------------------------------
# Shell steps
# ---------------------------------------------------------------------

def test_shell_steps_share_environment_and_workspace(tmp_path: Path, recorder, console) -> None:
    workflow = wf(
        job(
            "build",
            sh("write", 'mkdir -p out && echo "$GREETING $GITHUB_REPOSITORY" > out/hello.txt'),
            sh("append", "echo ${{ github.ref_name }} >> hello.txt", cwd="out"),
            env={"GREETING": "hi"},
        ),
        on=on_push("main"),
    )
    result = _runner(workflow, recorder, console, workspace=tmp_path, shell="sh").run(Event("push", "main", "org/repo"))

    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "out" / "hello.txt").read_text().split() == ["hi", "org/repo", "main"]


def test_non_zero_exit_fails_with_exit_code(tmp_path: Path, recorder, console) -> None:
    marker = tmp_path / "after"
    workflow = wf(
        job(
            "build",
            sh("fail", "echo broken >&2; exit 3"),
            sh("after", f"touch {marker}"),
        ),
        on=on_push(),
    )
    result = _runner(workflow, recorder, console, workspace=tmp_path, shell="sh").run(Event("push", "main", "o/r"))

    job_result = result.jobs[0]
    assert job_result.status is RunStatus.FAILED
    assert "(exit=3)" in job_result.error
    assert "broken" in job_result.error
    assert job_result.steps_run == ["fail"]
    assert not marker.exists()


def test_missing_working_directory_fails_step(tmp_path: Path, recorder, console) -> None:
    workflow = wf(job("j", sh("in nowhere", "true", cwd="missing")), on=on_push())
    result = _runner(workflow, recorder, console, workspace=tmp_path, shell="sh").run(Event("push", "main", "o/r"))

    assert result.status is RunStatus.FAILED
    assert "cwd not found" in result.jobs[0].error


@pytest.mark.parametrize(
    "branch,expected",
    [("main", True), ("release/1.0", True), ("feature/x", False)],
)
def test_trigger_branch_globs(branch: str, expected: bool, recorder, console) -> None:
    workflow = wf(job("j", uses("s", "test/record")), on=on_push("main", "release/*"))
    runner = _runner(workflow, recorder, console)
    assert runner.evaluate_trigger(Event("push", branch, "o/r")) is expected


def test_trigger_paths_filter(recorder, console) -> None:
    workflow = wf(job("j", uses("s", "test/record")), on=on_push("main", paths=["docs/**"]))
    runner = _runner(workflow, recorder, console)

    assert runner.evaluate_trigger(Event("push", "main", "o/r", changed_files=["docs/guide/intro.md"]))
    assert not runner.evaluate_trigger(Event("push", "main", "o/r", changed_files=["src/lib.rs"]))
    # unknown change set: the path filter can't exclude the event
    assert runner.evaluate_trigger(Event("push", "main", "o/r"))


def test_bad_env_expression_fails_before_any_step(recorder, console) -> None:
    workflow = wf(
        job("j", uses("first", "test/record"), uses("second", "test/record")),
        on=on_push(),
        env={"OUT": "${{ github.repository == }}"},
    )
    result = _runner(workflow, recorder, console).run(Event("push", "main", "o/r"))

    job_result = result.jobs[0]
    assert job_result.status is RunStatus.FAILED
    assert "[j] step 'first' failed" in job_result.error
    assert "bad env expression" in job_result.error
    assert job_result.steps_run == []
    assert recorder.calls == []


def test_step_timeout_fails_and_halts(tmp_path: Path, recorder, console) -> None:
    marker = tmp_path / "after"
    workflow = wf(
        job(
            "build",
            sh("slow", "sleep 5", timeout_minutes=0.005),
            sh("after", f"touch {marker}"),
        ),
        on=on_push(),
    )
    result = _runner(workflow, recorder, console, workspace=tmp_path, shell="sh").run(Event("push", "main", "o/r"))

    job_result = result.jobs[0]
    assert job_result.status is RunStatus.FAILED
    assert "timed out after 0.005 minute(s)" in job_result.error
    assert job_result.steps_run == ["slow"]
    assert not marker.exists()
