# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from . import settings
from .git_facts.git import changed_files, current_branch, get_remote_url, head_sha, merge_base, repository_slug
from .loader import YAML_SUFFIXES, load_workflow
from .model import Event, RunStatus, Workflow
from .runner import CIError, WorkflowRunner
from .ui.console import Console, get_console, set_console


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files under `root`.

    Looks at .github/workflows/*.yml|*.yaml and *_workflow.py.
    """
    workflow_files: list[Path] = []
    wf_dir = root / ".github" / "workflows"
    if wf_dir.is_dir():
        for path in wf_dir.iterdir():
            if path.suffix in YAML_SUFFIXES:
                workflow_files.append(path)
    workflow_files.extend(root.glob("*_workflow.py"))
    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gatedci run --workflow .github/workflows/docs.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .github/workflows/*.yml",
                "  *_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  gatedci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  gatedci run --workflow .github/workflows/docs.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx: click.Context, workflow_arg: str | None) -> Workflow:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return load_workflow(workflow_path)
    except (CIError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def build_event(
    event: str,
    branch: str | None,
    repository: str | None,
    sha: str | None,
    compare_ref: str | None = None,
    cwd: Path = Path("."),
) -> Event:
    """
    Fill missing event fields from the local git checkout.

    With `compare_ref`, the files changed since the merge-base with that
    ref are attached so `paths` filters can be evaluated.

    Raises:
        click.UsageError: a field is missing and git cannot supply it.
    """
    changed = None
    try:
        if branch is None:
            branch = current_branch(cwd=cwd)
        if repository is None:
            repository = repository_slug(get_remote_url("origin", cwd=cwd))
        if sha is None:
            sha = head_sha(cwd=cwd)
        if compare_ref:
            changed = changed_files(merge_base(compare_ref, cwd=cwd), "HEAD", cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError, ValueError) as e:
        raise click.UsageError(
            f"could not derive event from git ({e}); pass --branch/--repository explicitly"
        ) from e
    return Event(name=event, branch=branch, repository=repository, sha=sha, changed_files=changed)


def _parse_secrets(pairs: tuple[str, ...]) -> dict[str, str]:
    secrets = settings.load_secrets()
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--secret")
        secrets[name] = value
    return secrets


_event_options = [
    click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered if omitted"),
    click.option("--event", "event_name", default="push", show_default=True, help="Event type"),
    click.option("--branch", default=None, help="Branch name (defaults to current git branch)"),
    click.option("--repository", default=None, help="owner/repo (defaults to the origin remote)"),
    click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)"),
    click.option("--compare-ref", default=None, help="Git ref to diff against for `paths` filters (e.g. origin/main)"),
]


def event_options(fn):
    for opt in reversed(_event_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gatedci: run guarded, sequential CI workflows locally or from webhooks."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@event_options
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.option("--secret", "secret_pairs", multiple=True, metavar="NAME=VALUE", help="Secret exposed as secrets.NAME")
@click.option("--dry-run", is_flag=True, default=False, help="Print steps without executing them")
@click.pass_context
def run(ctx, workflow, event_name, branch, repository, sha, compare_ref, workspace, secret_pairs, dry_run):
    """Run a workflow for an event."""
    console = get_console()
    wf = _load(ctx, workflow)
    event = build_event(event_name, branch, repository, sha, compare_ref, cwd=Path(workspace))
    secrets = _parse_secrets(secret_pairs)
    console.add_secrets(secrets.values())

    runner = WorkflowRunner(wf, workspace=workspace, secrets=secrets, console=console, dry_run=dry_run)
    try:
        result = runner.run(event)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    if result is not None and result.status is RunStatus.FAILED:
        sys.exit(1)


@cli.command()
@event_options
@click.pass_context
def check(ctx, workflow, event_name, branch, repository, sha, compare_ref):
    """Show whether the workflow would run for an event, without running steps."""
    console = get_console()
    wf = _load(ctx, workflow)
    event = build_event(event_name, branch, repository, sha, compare_ref)
    runner = WorkflowRunner(wf, console=console)

    if not runner.evaluate_trigger(event):
        console.print_not_triggered(wf.name, event.name, event.branch)
        return

    console.print_info(f"TRIGGERED: {wf.name} on {event.name} ({event.branch})")
    context = runner.context_for(event)
    for job in wf.jobs:
        try:
            ok = runner.evaluate_guard(job, context)
        except ValueError as e:
            console.print_error("Invalid guard", f"job {job.name}: {e}")
            sys.exit(1)
        if ok:
            console.print_info(f"  {job.name}: would run ({len(job.steps)} step(s))")
        else:
            console.print_info(f"  {job.name}: skipped (guard not satisfied: {job.guard})")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.yml/.yaml/.py); discovered if omitted")
@click.pass_context
def validate(ctx, workflow):
    """Load a workflow and print its structure."""
    console = get_console()
    wf = _load(ctx, workflow)
    console.print_info(f"Workflow: {wf.name}")
    for name, flt in wf.trigger.events.items():
        branches = ", ".join(flt.branches) if flt and flt.branches else "any branch"
        console.print_info(f"  on {name}: {branches}")
    for job in wf.jobs:
        guard = f" if {job.guard}" if job.guard else ""
        console.print_info(f"  job {job.name}{guard}")
        for i, step in enumerate(job.steps, 1):
            action = step.run if step.run is not None else f"uses {step.uses}"
            console.print_info(f"    {i}. {step.name}: {action.strip().splitlines()[0] if action.strip() else ''}")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to $GATEDCI_WORKFLOW or discovery)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.pass_context
def serve(ctx, workflow, host, port, workspace):
    """Serve a webhook endpoint that runs the workflow on incoming events."""
    import uvicorn
    from .server.app import create_app

    console = get_console()
    wf = _load(ctx, workflow or settings.DEFAULT_WORKFLOW)
    secrets = settings.load_secrets()
    console.add_secrets(secrets.values())

    app = create_app(
        wf,
        runner_factory=lambda w: WorkflowRunner(w, workspace=workspace, secrets=secrets, console=console),
    )
    console.print_info(f"Serving {wf.name} on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
