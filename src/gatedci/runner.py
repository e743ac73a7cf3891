# runner.py
from __future__ import annotations

import os
import platform
import subprocess
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from . import settings
from .actions import ActionContext, ActionRegistry, default_registry
from .expressions import ExpressionError, evaluate_condition, interpolate
from .model import Event, EventFilter, Job, JobResult, RunResult, RunStatus, Step, Trigger, Workflow
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class GuardNotSatisfied(Exception):
    """The job guard evaluated to false. The job is skipped, not failed."""

    def __init__(self, job: str, guard: str):
        super().__init__(f"guard not satisfied: {guard}")
        self.job = job
        self.guard = guard


@dataclass(eq=False)
class StepExecutionError(Exception):
    job: str
    step: str
    message: str
    cmd: str | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        exit_part = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{exit_part}: {self.message}"


class EnvironmentSetupError(StepExecutionError):
    """Setup failed before the first step could start; reported against that step."""


TOOL_HINTS = {
    "cargo": "Install Rust via rustup or source \"$HOME/.cargo/env\".",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "curl": "Install curl or fix PATH.",
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "mkdocs": "Install mkdocs (e.g., pip install mkdocs).",
    "sphinx-build": "Install Sphinx (e.g., pip install sphinx).",
}


def _hint_for(cmd: str | None, exit_code: int | None) -> str | None:
    # 127: command not found
    if exit_code != 127 or not cmd:
        return None
    words = cmd.replace(";", " ").split()
    for word in words:
        if word in TOOL_HINTS:
            return TOOL_HINTS[word]
    return None


# ----------------------------------------------------------------------
# Trigger matching
# ----------------------------------------------------------------------

def _matches_any(value: str, patterns: List[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    """True only if the event type is declared and its filters accept the event."""
    if event.name not in trigger.events:
        return False
    flt: Optional[EventFilter] = trigger.events[event.name]
    if flt is None:
        return True

    if flt.branches and not _matches_any(event.branch, flt.branches):
        return False
    if flt.branches_ignore and _matches_any(event.branch, flt.branches_ignore):
        return False

    # changed files unknown -> path filter can't exclude the event
    if flt.paths and event.changed_files is not None:
        if not any(_matches_any(f, flt.paths) for f in event.changed_files):
            return False
    return True


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class WorkflowRunner:
    """
    Evaluates a workflow's trigger and guards against an event, then runs
    each job's steps strictly in order, stopping at the first failure.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        workspace: str | Path = ".",
        secrets: Optional[Mapping[str, str]] = None,
        actions: Optional[ActionRegistry] = None,
        console: Optional[Console] = None,
        dry_run: bool = False,
        shell: str | None = None,
        output_tail: int | None = None,
        server_url: str | None = None,
    ):
        self.workflow = workflow
        self.workspace = Path(workspace).resolve()
        self.secrets: Mapping[str, str] = MappingProxyType(dict(secrets or {}))
        self.actions = actions if actions is not None else default_registry()
        self.console = console or get_console()
        self.dry_run = dry_run
        self.shell = shell or settings.SHELL
        self.output_tail = output_tail if output_tail is not None else settings.OUTPUT_TAIL
        self.server_url = (server_url or settings.GITHUB_SERVER).rstrip("/")
        self.console.add_secrets(self.secrets.values())

    # ---- evaluation ----

    def evaluate_trigger(self, event: Event) -> bool:
        return trigger_matches(self.workflow.trigger, event)

    def context_for(self, event: Event, env: Mapping[str, str] | None = None) -> Dict[str, Any]:
        """Expression context: github, env, secrets, runner."""
        owner = event.repository.split("/", 1)[0]
        return {
            "github": {
                "repository": event.repository,
                "repository_owner": owner,
                "event_name": event.name,
                "ref": event.ref,
                "ref_name": event.branch,
                "sha": event.sha or "",
                "workspace": str(self.workspace),
                "server_url": self.server_url,
                "workflow": self.workflow.name,
            },
            "env": dict(env or {}),
            "secrets": dict(self.secrets),
            "runner": {
                "os": platform.system(),
                "arch": platform.machine(),
                "temp": os.environ.get("TMPDIR", "/tmp"),
            },
        }

    def evaluate_guard(self, job: Job, context: Mapping[str, Any]) -> bool:
        """
        True when the job has no guard or its guard holds.

        Raises:
            ExpressionError: the guard is malformed.
        """
        if not job.guard:
            return True
        return evaluate_condition(job.guard, context)

    def _check_guard(self, job: Job, context: Mapping[str, Any]) -> None:
        if not self.evaluate_guard(job, context):
            raise GuardNotSatisfied(job.name, job.guard or "")

    # ---- environment ----

    def _materialize_env(self, job: Job, event: Event) -> Mapping[str, str]:
        """Workflow env, then job env (which may reference the former)."""
        base_ctx = self.context_for(event)
        wf_env = {k: interpolate(str(v), base_ctx) for k, v in self.workflow.env.items()}
        job_ctx = self.context_for(event, wf_env)
        job_env = {k: interpolate(str(v), job_ctx) for k, v in job.env.items()}
        return MappingProxyType({**wf_env, **job_env})

    def _process_env(self, event: Event, env: Mapping[str, str], step_env: Mapping[str, str]) -> Dict[str, str]:
        proc_env = os.environ.copy()
        proc_env.update({
            "CI": "true",
            "GITHUB_REPOSITORY": event.repository,
            "GITHUB_REF": event.ref,
            "GITHUB_REF_NAME": event.branch,
            "GITHUB_SHA": event.sha or "",
            "GITHUB_EVENT_NAME": event.name,
            "GITHUB_WORKSPACE": str(self.workspace),
        })
        proc_env.update(env)
        proc_env.update(step_env)
        return proc_env

    # ---- execution ----

    def _run_shell(self, job: Job, step: Step, cmd: str, cwd: Path, proc_env: Dict[str, str]) -> None:
        if not cwd.exists():
            raise StepExecutionError(job=job.name, step=step.name, message=f"cwd not found: {cwd}", cmd=cmd)

        timeout = step.timeout_minutes * 60 if step.timeout_minutes else None
        try:
            proc = subprocess.run(
                [self.shell, "-e", "-c", cmd],
                cwd=str(cwd),
                env=proc_env,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise StepExecutionError(
                job=job.name,
                step=step.name,
                message=f"timed out after {step.timeout_minutes} minute(s)",
                cmd=cmd,
            ) from e
        except FileNotFoundError as e:
            raise StepExecutionError(
                job=job.name,
                step=step.name,
                message=f"shell not found: {self.shell}",
                cmd=cmd,
            ) from e

        if proc.returncode != 0:
            raise StepExecutionError(
                job=job.name,
                step=step.name,
                message=(proc.stderr.strip().splitlines() or ["non-zero exit"])[-1],
                cmd=cmd,
                exit_code=proc.returncode,
                stdout=proc.stdout[-self.output_tail:],
                stderr=proc.stderr[-self.output_tail:],
            )
        if self.console.debug and proc.stdout:
            self.console.print_output(proc.stdout[-self.output_tail:])

    def _run_action(self, job: Job, step: Step, event: Event, inputs: Dict[str, str], env: Mapping[str, str]) -> None:
        try:
            handler = self.actions.resolve(step.uses or "")
        except (LookupError, ValueError) as e:
            raise StepExecutionError(job=job.name, step=step.name, message=str(e), cmd=step.uses) from e

        ctx = ActionContext(
            job=job.name,
            step=step,
            inputs=inputs,
            env=env,
            workspace=self.workspace,
            event=event,
            server_url=self.server_url,
            console=self.console,
        )
        try:
            handler(ctx)
        except StepExecutionError:
            raise
        except Exception as e:
            # actions are opaque: any error they raise fails the step
            raise StepExecutionError(job=job.name, step=step.name, message=str(e), cmd=step.uses) from e

    def _execute_step(self, job: Job, step: Step, event: Event, env: Mapping[str, str]) -> None:
        try:
            ctx = self.context_for(event, env)
            step_env = {k: interpolate(str(v), ctx) for k, v in step.env.items()}
            ctx["env"].update(step_env)
            if step.run is not None:
                cmd = interpolate(step.run, ctx)
                cwd = (self.workspace / interpolate(step.cwd or ".", ctx)).resolve()
            else:
                inputs = {k: interpolate(str(v), ctx) for k, v in step.with_.items()}
        except ExpressionError as e:
            raise StepExecutionError(job=job.name, step=step.name, message=f"bad expression: {e}") from e

        if self.dry_run:
            self.console.print_step_dry_run(step.name, step.run if step.run is not None else f"uses: {step.uses}")
            return

        self.console.print_step(step.name, step.run)
        if step.run is not None:
            self._run_shell(job, step, cmd, cwd, self._process_env(event, env, step_env))
        else:
            self._run_action(job, step, event, inputs, MappingProxyType({**env, **step_env}))

    def run_job(self, job: Job, event: Event) -> JobResult:
        """
        Pending -> Skipped (guard false) | Running -> Succeeded | Failed.
        """
        result = JobResult(name=job.name)
        first_step = job.steps[0].name if job.steps else "(setup)"

        try:
            self._check_guard(job, self.context_for(event))
        except GuardNotSatisfied as e:
            result.reason = str(e)
            result.advance(RunStatus.SKIPPED)
            self.console.print_job_skipped(job.name, result.reason)
            return result
        except ExpressionError as e:
            result.advance(RunStatus.RUNNING)
            err = EnvironmentSetupError(job=job.name, step=first_step, message=f"invalid guard: {e}")
            return self._fail(result, err)

        result.advance(RunStatus.RUNNING)
        self.console.print_job_start(job.name, job.runs_on)

        try:
            try:
                env = self._materialize_env(job, event)
            except ExpressionError as e:
                raise EnvironmentSetupError(job=job.name, step=first_step, message=f"bad env expression: {e}") from e

            for step in job.steps:
                result.steps_run.append(step.name)
                self._execute_step(job, step, event, env)
        except StepExecutionError as e:
            return self._fail(result, e)

        result.advance(RunStatus.SUCCEEDED)
        self.console.print_success(job.name)
        return result

    def _fail(self, result: JobResult, err: StepExecutionError) -> JobResult:
        result.error = self.console.mask(str(err))
        result.advance(RunStatus.FAILED)
        output = (err.stderr or err.stdout).strip()
        if output:
            self.console.print_output(output)
        self.console.print_failure(
            err.step,
            str(err),
            exit_code=err.exit_code,
            hint=_hint_for(err.cmd, err.exit_code),
        )
        return result

    def run(self, event: Event) -> RunResult | None:
        """
        Run the workflow for `event`.

        Returns None when the trigger does not match; no guard or step is
        evaluated in that case.
        """
        wf = self.workflow
        if not self.evaluate_trigger(event):
            self.console.print_not_triggered(wf.name, event.name, event.branch)
            return None

        self.console.print_run_started(
            workflow=wf.name,
            event=event.name,
            branch=event.branch,
            repository=event.repository,
            job_count=len(wf.jobs),
        )

        result = RunResult(workflow=wf.name, event=event)
        for job in wf.jobs:
            job_result = self.run_job(job, event)
            result.jobs.append(job_result)
            if job_result.status is RunStatus.FAILED:
                break

        self.console.print_results(
            result.status.value,
            {j.name: j.status.value for j in result.jobs},
        )
        return result
