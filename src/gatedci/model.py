# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class EventFilter:
    """Branch/path filters attached to one trigger event (e.g. `push`)."""
    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = None
    paths: Optional[List[str]] = None


@dataclass(frozen=True)
class Trigger:
    """
    Condition under which the workflow runs.

    `events` maps an event name to its filter. A `None` filter means
    "any branch, any path".
    """
    events: Dict[str, Optional[EventFilter]] = field(default_factory=dict)


@dataclass(frozen=True)
class Step:
    """A single ordered unit of work: a shell command or an action reference."""
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must define exactly one of 'run' or 'uses'")


@dataclass
class Job:
    """A guarded, ordered list of steps."""
    name: str
    steps: list[Step]
    guard: str | None = None              # e.g. "github.repository == 'org/repo'"
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: list[str] = field(default_factory=list)


@dataclass
class Workflow:
    name: str
    trigger: Trigger
    jobs: list[Job]
    env: Dict[str, str] = field(default_factory=dict)
    source: str | None = None             # file the workflow was loaded from


@dataclass(frozen=True)
class Event:
    """An event delivered by an external trigger source."""
    name: str                              # "push", "pull_request", ...
    branch: str
    repository: str                        # "owner/repo"
    sha: str | None = None
    changed_files: Optional[List[str]] = None

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}"


# ----------------------------------------------------------------------
# Run state machine
# ----------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SKIPPED, RunStatus.SUCCEEDED, RunStatus.FAILED)


_ALLOWED: Dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.SKIPPED, RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED},
    RunStatus.SKIPPED: set(),
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
}


class IllegalTransitionError(RuntimeError):
    pass


def transition(current: RunStatus, to: RunStatus) -> RunStatus:
    """Validate a state change and return the new state."""
    if to not in _ALLOWED[current]:
        raise IllegalTransitionError(f"illegal transition {current.value} -> {to.value}")
    return to


@dataclass
class JobResult:
    name: str
    status: RunStatus = RunStatus.PENDING
    steps_run: list[str] = field(default_factory=list)
    error: str | None = None
    reason: str | None = None             # why the job was skipped

    def advance(self, to: RunStatus) -> None:
        self.status = transition(self.status, to)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "steps_run": list(self.steps_run),
            "error": self.error,
            "reason": self.reason,
        }


@dataclass
class RunResult:
    workflow: str
    event: Event
    jobs: list[JobResult] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        statuses = [j.status for j in self.jobs]
        if RunStatus.FAILED in statuses:
            return RunStatus.FAILED
        if RunStatus.SUCCEEDED in statuses:
            return RunStatus.SUCCEEDED
        if statuses and all(s is RunStatus.SKIPPED for s in statuses):
            return RunStatus.SKIPPED
        return RunStatus.PENDING

    @property
    def steps_run(self) -> list[str]:
        return [s for j in self.jobs for s in j.steps_run]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow,
            "status": self.status.value,
            "event": {
                "name": self.event.name,
                "branch": self.event.branch,
                "repository": self.event.repository,
                "sha": self.event.sha,
            },
            "jobs": [j.to_dict() for j in self.jobs],
        }
