"""Run state machine and result aggregation."""

from __future__ import annotations

import pytest

from gatedci.dsl import job, sh, uses
from gatedci.model import Event, IllegalTransitionError, JobResult, RunResult, RunStatus, Step, transition


@pytest.mark.parametrize(
    "current,to",
    [
        (RunStatus.PENDING, RunStatus.SKIPPED),
        (RunStatus.PENDING, RunStatus.RUNNING),
        (RunStatus.RUNNING, RunStatus.SUCCEEDED),
        (RunStatus.RUNNING, RunStatus.FAILED),
    ],
)
def test_legal_transitions(current: RunStatus, to: RunStatus) -> None:
    assert transition(current, to) is to


@pytest.mark.parametrize(
    "current,to",
    [
        (RunStatus.PENDING, RunStatus.SUCCEEDED),
        (RunStatus.SKIPPED, RunStatus.RUNNING),
        (RunStatus.SUCCEEDED, RunStatus.FAILED),
        (RunStatus.FAILED, RunStatus.RUNNING),
        (RunStatus.RUNNING, RunStatus.SKIPPED),
    ],
)
def test_illegal_transitions_fail_loudly(current: RunStatus, to: RunStatus) -> None:
    with pytest.raises(IllegalTransitionError):
        transition(current, to)


def test_terminal_states() -> None:
    assert {s for s in RunStatus if s.terminal} == {RunStatus.SKIPPED, RunStatus.SUCCEEDED, RunStatus.FAILED}


def test_run_result_status_aggregation() -> None:
    result = RunResult(workflow="w", event=Event("push", "main", "o/r"))
    assert result.status is RunStatus.PENDING

    skipped = JobResult("a", status=RunStatus.SKIPPED)
    result.jobs.append(skipped)
    assert result.status is RunStatus.SKIPPED

    result.jobs.append(JobResult("b", status=RunStatus.SUCCEEDED))
    assert result.status is RunStatus.SUCCEEDED

    result.jobs.append(JobResult("c", status=RunStatus.FAILED))
    assert result.status is RunStatus.FAILED
    assert result.to_dict()["status"] == "failed"


def test_step_requires_exactly_one_action() -> None:
    with pytest.raises(ValueError):
        Step(name="nothing")
    with pytest.raises(ValueError):
        Step(name="both", run="true", uses="actions/checkout@v4")


def test_job_cwd_applies_only_to_run_steps() -> None:
    j = job("j", sh("a", "make"), sh("b", "make", cwd="sub"), uses("c", "actions/checkout@v4"), cwd="docs")
    assert [s.cwd for s in j.steps] == ["docs", "sub", None]


def test_job_requires_steps() -> None:
    with pytest.raises(ValueError):
        job("empty")
