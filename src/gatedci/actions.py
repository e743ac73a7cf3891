# actions.py
# Reusable actions referenced by `uses:` steps.
#
# An action is a plain callable taking an ActionContext. It signals failure
# by raising; the runner turns any raised error into a StepExecutionError.
# Only the action name matters for resolution: `actions/checkout@v4.1.1`
# and `actions/checkout@main` resolve to the same handler.

from __future__ import annotations

import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from . import settings
from .git_facts import git
from .model import Event, Step
from .ui.console import Console, get_console


class ActionError(RuntimeError):
    """Raised by an action to fail its step."""


@dataclass
class ActionContext:
    job: str
    step: Step
    inputs: Dict[str, str]
    env: Mapping[str, str]
    workspace: Path
    event: Event
    server_url: str = settings.GITHUB_SERVER
    console: Console = field(default_factory=get_console)


ActionHandler = Callable[[ActionContext], None]


def parse_action_ref(ref: str) -> Tuple[str, Optional[str]]:
    """Split `owner/name@version` into (`owner/name`, `version`)."""
    name, sep, version = ref.strip().partition("@")
    if not name:
        raise ValueError(f"invalid action reference: {ref!r}")
    return name, (version if sep else None)


class ActionRegistry:
    """Maps action names (without version) to handlers."""

    def __init__(self, handlers: Optional[Dict[str, ActionHandler]] = None):
        self._handlers: Dict[str, ActionHandler] = {name.lower(): h for name, h in (handlers or {}).items()}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name.lower()] = handler

    def resolve(self, ref: str) -> ActionHandler:
        name, _version = parse_action_ref(ref)
        try:
            return self._handlers[name.lower()]
        except KeyError:
            known = ", ".join(sorted(self._handlers)) or "none"
            raise LookupError(f"no handler for action {name!r} (known: {known})") from None

    def __contains__(self, ref: str) -> bool:
        return parse_action_ref(ref)[0].lower() in self._handlers


def _as_bool(value: str | None) -> bool:
    return str(value or "").strip().lower() in ("true", "1", "yes", "on")


def remote_url(server_url: str, repository: str, token: str | None = None) -> str:
    """Clone/push URL for `repository`, with the token embedded for http(s)."""
    parts = urlsplit(server_url.rstrip("/"))
    netloc = parts.netloc
    if token and parts.scheme in ("http", "https"):
        netloc = f"x-access-token:{token}@{netloc}"
    return urlunsplit((parts.scheme, netloc, f"{parts.path}/{repository}.git", "", ""))


def _git_failure(what: str, err: subprocess.CalledProcessError) -> ActionError:
    stderr = (err.stderr or "").strip()
    return ActionError(f"{what} failed (exit={err.returncode}): {stderr}" if stderr else f"{what} failed")


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout(ctx: ActionContext) -> None:
    """
    Make the workspace a checkout of the event repository.

    Inputs:
      repository: owner/repo to clone (defaults to the event repository)
      ref: branch, tag or SHA to check out (defaults to the event SHA)
      token: credential for private repositories

    An existing checkout is reused: missing commits are fetched first, and
    nothing is checked out when HEAD is already at `ref`.
    """
    repository = ctx.inputs.get("repository") or ctx.event.repository
    ref = ctx.inputs.get("ref") or ctx.event.sha
    ws = ctx.workspace
    url = remote_url(ctx.server_url, repository, ctx.inputs.get("token"))

    try:
        if not git.is_repo(ws):
            ws.mkdir(parents=True, exist_ok=True)
            ctx.console.print_debug(f"cloning {repository} into {ws}")
            git.clone(url, ws)
        if not ref:
            return
        target = ref
        if not git.has_commit(ref, cwd=ws):
            # a bare SHA is fetched through the branch it was pushed to
            wanted = ctx.inputs.get("ref") or ctx.event.ref
            ctx.console.print_debug(f"fetching {wanted} from {repository}")
            git.fetch(url, wanted, cwd=ws)
            if not git.has_commit(ref, cwd=ws):
                target = "FETCH_HEAD"
        if git.resolve_commit(target, cwd=ws) == git.head_sha(cwd=ws):
            ctx.console.print_debug(f"{ws} already at {ref}")
            return
        git.checkout(target, cwd=ws)
    except subprocess.CalledProcessError as e:
        raise _git_failure(f"checkout of {repository}", e) from e


def gh_pages(ctx: ActionContext) -> None:
    """
    Publish a directory of generated files to a branch.

    Inputs:
      github_token: credential used for the push (required)
      publish_dir: directory to publish, relative to the workspace (./public)
      publish_branch: target branch (gh-pages)
      external_repository: owner/repo to push to (the event repository)
      force_orphan: replace the branch with a single commit (false)
      full_commit_message: commit message
    """
    token = ctx.inputs.get("github_token") or ctx.inputs.get("personal_token")
    if not token:
        raise ActionError("github_token is required to publish")

    publish_dir = (ctx.workspace / ctx.inputs.get("publish_dir", "./public")).resolve()
    if not publish_dir.is_dir():
        raise ActionError(f"publish_dir not found: {publish_dir}")

    branch = ctx.inputs.get("publish_branch") or "gh-pages"
    repository = ctx.inputs.get("external_repository") or ctx.event.repository
    message = ctx.inputs.get("full_commit_message") or f"deploy: {ctx.event.sha or ctx.event.branch}"
    url = remote_url(ctx.server_url, repository, token)

    with tempfile.TemporaryDirectory(prefix="gatedci-pages-") as tmp:
        stage = Path(tmp) / "site"
        try:
            if _as_bool(ctx.inputs.get("force_orphan")):
                shutil.copytree(publish_dir, stage)
                git.publish_orphan(stage, url, branch, message=message)
            else:
                git.publish_update(publish_dir, stage, url, branch, message=message)
        except subprocess.CalledProcessError as e:
            raise _git_failure(f"publish to {repository}@{branch}", e) from e

    ctx.console.print_info(f"Published {publish_dir.name} to {repository}@{branch}")


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("actions/checkout", checkout)
    registry.register("peaceiris/actions-gh-pages", gh_pages)
    return registry
