"""Console output formatting utilities for gatedci."""

from __future__ import annotations

import sys
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, secrets: Iterable[str] = ()):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            secrets: Values that must never be printed; replaced with ***
        """
        self.debug = debug
        self._secrets = [s for s in secrets if s]

    def add_secrets(self, values: Iterable[str]) -> None:
        for v in values:
            if v and v not in self._secrets:
                self._secrets.append(v)

    def mask(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, "***")
        return text

    def _out(self, message: str = "", file=None) -> None:
        print(self.mask(message), file=file or sys.stdout)

    def print_run_started(
        self,
        workflow: str,
        event: str,
        branch: str,
        repository: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Event: {event} ({branch})")
        self._out(f"Repository: {repository}")
        self._out(f"Jobs: {job_count}")
        self._out()

    def print_not_triggered(self, workflow: str, event: str, branch: str) -> None:
        self._out(f"NOT TRIGGERED: {workflow} does not run on {event} ({branch})")

    def print_job_start(self, name: str, runs_on: list[str] | None = None) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")
        if runs_on:
            self._out(f"Runs on: {', '.join(runs_on)}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name}")
        self._out(f"STATUS: skipped ({reason})")

    def print_step(self, name: str, command: str | None = None) -> None:
        """Print step start message."""
        self._out(f"STEP: {name}")
        if command and self.debug:
            self._out(f"  $ {command}")

    def print_step_dry_run(self, name: str, command: str) -> None:
        self._out(f"STEP (dry run): {name}")
        self._out(f"  {command}")

    def print_output(self, text: str) -> None:
        """Print captured step output, indented."""
        for line in text.rstrip().splitlines():
            self._out(f"  | {line}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out("STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._out(f"{prefix}: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            self._out(f"Error: {error_line}")

    def print_results(self, status: str, jobs: dict[str, str]) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out(f"RESULT: {status.upper()}")
        self._out("=" * 40)
        for job, job_status in jobs.items():
            self._out(f"  {job}: {job_status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._out(f"\nERROR: {title}", file=sys.stderr)
        self._out(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                self._out(f"  {detail}", file=sys.stderr)
        if suggestion:
            self._out(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._out(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
