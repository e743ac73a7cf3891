# loader.py
# Workflow loading from local files.
#
#   *.py          -> workflow() -> Workflow, or WORKFLOW = Workflow
#   *.yml/*.yaml  -> GitHub-Actions style document, validated with pydantic

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .model import EventFilter, Job, Step, Trigger, Workflow
from .runner import CIError

YAML_SUFFIXES = (".yml", ".yaml")
UNSUPPORTED_STEP_KEYS = ("if", "continue-on-error")


def _scalar_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _str_map(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): _scalar_str(v) for k, v in value.items()}
    return value


def _str_list(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


# -------------------- Schemas --------------------

class StepDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @field_validator("with_", "env", mode="before")
    @classmethod
    def _coerce_maps(cls, value: Any) -> Any:
        return _str_map(value)

    @model_validator(mode="before")
    @classmethod
    def _reject_unsupported(cls, data: Any) -> Any:
        if isinstance(data, dict):
            found = [key for key in UNSUPPORTED_STEP_KEYS if key in data]
            if found:
                label = data.get("name") or data.get("run") or data.get("uses") or "<unnamed>"
                raise ValueError(
                    f"step {str(label).strip().splitlines()[0]!r}: unsupported key(s) {', '.join(found)}; "
                    "steps always run in order and the first failure stops the job"
                )
        return data

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepDocument":
        if (self.run is None) == (self.uses is None):
            raise ValueError("step must define exactly one of 'run' or 'uses'")
        return self


class JobDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    if_: Optional[str] = Field(default=None, alias="if")
    runs_on: List[str] = Field(default_factory=list, alias="runs-on")
    env: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDocument] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _str_map(value)

    @field_validator("runs_on", mode="before")
    @classmethod
    def _coerce_runs_on(cls, value: Any) -> Any:
        return _str_list(value) if value is not None else []

    @field_validator("if_", mode="before")
    @classmethod
    def _guard_str(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return "true" if value else "false"
        return value


class FilterDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    branches: Optional[List[str]] = None
    branches_ignore: Optional[List[str]] = Field(default=None, alias="branches-ignore")
    paths: Optional[List[str]] = None

    @field_validator("branches", "branches_ignore", "paths", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> Any:
        return _str_list(value)


class WorkflowDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Optional[FilterDocument]]]
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobDocument] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> Any:
        return _str_map(value)


# -------------------- Conversion --------------------

def _step_name(doc: StepDocument) -> str:
    if doc.name:
        return doc.name
    if doc.run is not None:
        first = doc.run.strip().splitlines()
        return f"Run {first[0]}" if first else "Run"
    return f"Run {doc.uses}"


def _trigger(on: Union[str, List[str], Dict[str, Optional[FilterDocument]]]) -> Trigger:
    if isinstance(on, str):
        return Trigger(events={on: None})
    if isinstance(on, list):
        return Trigger(events={name: None for name in on})
    events: Dict[str, Optional[EventFilter]] = {}
    for name, flt in on.items():
        if flt is None or (flt.branches is None and flt.branches_ignore is None and flt.paths is None):
            events[name] = None
        else:
            events[name] = EventFilter(
                branches=flt.branches,
                branches_ignore=flt.branches_ignore,
                paths=flt.paths,
            )
    return Trigger(events=events)


def workflow_from_dict(data: Dict[Any, Any], *, source: str | None = None, default_name: str = "workflow") -> Workflow:
    """
    Build a Workflow from a parsed YAML document.

    Raises:
        CIError: the document does not describe a valid workflow.
    """
    if not isinstance(data, dict):
        raise CIError(
            kind="invalid_workflow",
            message="workflow document must be a mapping",
            details={"source": source or "<memory>"},
        )
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDocument.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise CIError(
            kind="invalid_workflow",
            message=f"workflow failed validation ({e.error_count()} error(s))",
            details={"source": source or "<memory>", "errors": errors},
        ) from e

    jobs: List[Job] = []
    for job_id, job_doc in doc.jobs.items():
        steps = [
            Step(
                name=_step_name(s),
                run=s.run,
                uses=s.uses,
                with_=dict(s.with_),
                env=dict(s.env),
                cwd=s.working_directory,
                timeout_minutes=s.timeout_minutes,
            )
            for s in job_doc.steps
        ]
        jobs.append(
            Job(
                name=job_doc.name or job_id,
                steps=steps,
                guard=job_doc.if_,
                env=dict(job_doc.env),
                runs_on=list(job_doc.runs_on),
            )
        )

    return Workflow(
        name=doc.name or default_name,
        trigger=_trigger(doc.on),
        jobs=jobs,
        env=dict(doc.env),
        source=source,
    )


def _load_yaml(wf_path: Path) -> Workflow:
    try:
        with wf_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise CIError(
            kind="invalid_workflow",
            message="workflow file is not valid YAML",
            details={"source": str(wf_path), "error": str(e)},
        ) from e
    return workflow_from_dict(data, source=str(wf_path), default_name=wf_path.stem)


def _load_python(wf_path: Path) -> Workflow:
    module_name = f"gatedci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    workflow = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        workflow = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        workflow = globals_dict["WORKFLOW"]

    if not isinstance(workflow, Workflow):
        raise CIError(
            kind="invalid_workflow",
            message="Workflow must return/define a Workflow. "
                    "Define workflow() -> Workflow or WORKFLOW = wf(...).",
            details={"source": str(wf_path)},
        )
    workflow.source = str(wf_path)
    return workflow


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a .py, .yml or .yaml file.

    Raises:
        FileNotFoundError: the file does not exist.
        CIError: the file is not a valid workflow.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        return _load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    raise CIError(
        kind="invalid_workflow",
        message=f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}",
        details={"source": str(wf_path)},
    )
