# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def is_repo(path: str | Path) -> bool:
    """True if `path` is inside a git work tree."""
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return False


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Return the checked-out branch name.

    On a detached HEAD git prints "HEAD"; callers decide what that means.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    """Return the URL configured for `remote`."""
    return _git(["remote", "get-url", remote], cwd=cwd)


_SLUG_RE = re.compile(r"(?:[:/])(?P<owner>[^/:]+)/(?P<repo>[^/]+?)(?:\.git)?/?$")


def repository_slug(url: str) -> str:
    """
    Turn a remote URL into an `owner/repo` identifier.

    Handles https (https://github.com/org/repo.git) and scp-style ssh
    (git@github.com:org/repo.git) remotes.

    Raises:
        ValueError: the URL has no owner/repo suffix.
    """
    m = _SLUG_RE.search(url.strip())
    if not m:
        raise ValueError(f"cannot derive owner/repo from remote URL: {url!r}")
    return f"{m.group('owner')}/{m.group('repo')}"


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Return a list of files changed between two Git references.

    File paths are returned relative to the repository root.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Return the merge-base (common ancestor) between HEAD and another ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def clone(url: str, dest: str | Path) -> None:
    _git(["clone", url, str(dest)])


def checkout(ref: str, cwd: str | Path) -> None:
    _git(["checkout", "-q", ref], cwd=cwd)


def fetch(url: str, ref: str, cwd: str | Path) -> None:
    """Fetch `ref` from `url` so its commits exist locally (FETCH_HEAD)."""
    _git(["fetch", "-q", url, ref], cwd=cwd)


def has_commit(ref: str, cwd: str | Path) -> bool:
    """True if `ref` names a commit present in the local object store."""
    try:
        _git(["cat-file", "-e", f"{ref}^{{commit}}"], cwd=cwd)
    except subprocess.CalledProcessError:
        return False
    return True


def resolve_commit(ref: str, cwd: str | Path) -> str:
    """Return the full SHA of the commit `ref` points at."""
    return _git(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=cwd)


def publish_orphan(
    source_dir: str | Path,
    push_url: str,
    branch: str,
    *,
    message: str,
    author_name: str = "gatedci",
    author_email: str = "gatedci@users.noreply.github.com",
) -> None:
    """
    Commit the contents of `source_dir` as a single orphan commit and
    force-push it to `branch` of `push_url`.

    `source_dir` must be a scratch directory: a fresh repository is
    initialized inside it.
    """
    source_dir = Path(source_dir)
    _git(["init", "-q"], cwd=source_dir)
    _git(["checkout", "-q", "--orphan", branch], cwd=source_dir)
    _git(["add", "--all"], cwd=source_dir)
    _git(
        [
            "-c", f"user.name={author_name}",
            "-c", f"user.email={author_email}",
            "commit", "-q", "--allow-empty", "-m", message,
        ],
        cwd=source_dir,
    )
    _git(["push", "--force", "-q", push_url, f"HEAD:refs/heads/{branch}"], cwd=source_dir)


def publish_update(
    source_dir: str | Path,
    work_dir: str | Path,
    push_url: str,
    branch: str,
    *,
    message: str,
    author_name: str = "gatedci",
    author_email: str = "gatedci@users.noreply.github.com",
) -> None:
    """
    Add the contents of `source_dir` as a new commit on top of `branch`,
    creating the branch when the remote does not have it yet.
    """
    work_dir = Path(work_dir)
    try:
        _git(["clone", "-q", "--depth", "1", "--branch", branch, push_url, str(work_dir)])
    except subprocess.CalledProcessError:
        work_dir.mkdir(parents=True, exist_ok=True)
        _git(["init", "-q"], cwd=work_dir)
        _git(["checkout", "-q", "--orphan", branch], cwd=work_dir)

    for entry in work_dir.iterdir():
        if entry.name == ".git":
            continue
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
    shutil.copytree(source_dir, work_dir, dirs_exist_ok=True)

    _git(["add", "--all"], cwd=work_dir)
    _git(
        [
            "-c", f"user.name={author_name}",
            "-c", f"user.email={author_email}",
            "commit", "-q", "--allow-empty", "-m", message,
        ],
        cwd=work_dir,
    )
    _git(["push", "-q", push_url, f"HEAD:refs/heads/{branch}"], cwd=work_dir)
