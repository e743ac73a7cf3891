# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional

from .model import EventFilter, Job, Step, Trigger, Workflow


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout_minutes: float | None = None,
) -> Step:
    return Step(name=name, run=cmd, cwd=cwd, env=env or {}, timeout_minutes=timeout_minutes)


def uses(name: str, action: str, *, env: Optional[Dict[str, str]] = None, **inputs: object) -> Step:
    """
    Reference a reusable action. Keyword arguments become its inputs:

        uses("Deploy", "peaceiris/actions-gh-pages@v4.0.0",
             github_token="${{ secrets.GITHUB_TOKEN }}", publish_dir="./target/doc")
    """
    return Step(name=name, uses=action, with_={k: _str(v) for k, v in inputs.items()}, env=env or {})


def _str(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    if_: str | None = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd for run steps
) -> Job:
    steps_final = list(steps_list or []) + list(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None or s.run is None else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        guard=if_,
        env={k: _str(v) for k, v in (env or {}).items()},
        runs_on=list(runs_on or []),
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_event(
    event: str,
    *,
    branches: Optional[List[str]] = None,
    branches_ignore: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
) -> Trigger:
    if branches is None and branches_ignore is None and paths is None:
        return Trigger(events={event: None})
    return Trigger(events={event: EventFilter(branches=branches, branches_ignore=branches_ignore, paths=paths)})


def on_push(*branches: str, paths: Optional[List[str]] = None) -> Trigger:
    """on_push("main") -> run on pushes to main."""
    return on_event("push", branches=list(branches) or None, paths=paths)


def any_of(*triggers: Trigger) -> Trigger:
    """Combine triggers: any_of(on_push("main"), on_event("pull_request"))."""
    events: Dict[str, Optional[EventFilter]] = {}
    for t in triggers:
        events.update(t.events)
    return Trigger(events=events)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job, name: str = "workflow", on: Trigger, env: Optional[Dict[str, object]] = None) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), on=on_push("main")).

    Users can write:
        from gatedci import wf, job, sh, on_push

        def workflow():
            return wf(
                job("docs", sh("Build", "cargo doc --all")),
                name="docs",
                on=on_push("main"),
            )

    Or define WORKFLOW directly:
        WORKFLOW = wf(job(...), on=on_push("main"))
    """
    if not jobs:
        raise ValueError(f"workflow {name!r} must have at least one job")
    names = [j.name for j in jobs]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate job names found: {dupes}")
    return Workflow(
        name=name,
        trigger=on,
        jobs=list(jobs),
        env={k: _str(v) for k, v in (env or {}).items()},
    )
