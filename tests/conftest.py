"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from gatedci.actions import ActionContext, ActionRegistry
from gatedci.dsl import job, on_push, uses, wf
from gatedci.model import Workflow
from gatedci.ui.console import Console

FIXTURES = Path(__file__).parent / "fixtures"


class Recorder:
    """Action handlers that record each invocation; named steps can be told to fail."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.contexts: List[ActionContext] = []
        self.fail_on: set[str] = set()

    def __call__(self, ctx: ActionContext) -> None:
        self.calls.append(ctx.step.name)
        self.contexts.append(ctx)
        if ctx.step.name in self.fail_on:
            raise RuntimeError(f"{ctx.step.name} exploded")

    def registry(self) -> ActionRegistry:
        reg = ActionRegistry()
        reg.register("test/record", self)
        return reg


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def console() -> Console:
    return Console(debug=False)


@pytest.fixture
def docs_workflow() -> Workflow:
    """push to main, guarded on org/repo, four recorded steps."""
    return wf(
        job(
            "docs",
            uses("Checkout", "test/record@v1"),
            uses("Install toolchain", "test/record@v1"),
            uses("Build docs", "test/record@v1"),
            uses("Deploy", "test/record@v1", publish_dir="./target/doc"),
            if_="github.repository == 'org/repo'",
        ),
        name="docs",
        on=on_push("main"),
    )


@pytest.fixture
def rustdoc_path() -> Path:
    return FIXTURES / "rustdoc.yaml"
