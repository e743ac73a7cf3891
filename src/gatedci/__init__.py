from .dsl import any_of, job, on_event, on_push, sh, uses, wf
from .model import Event, Job, RunStatus, Step, Trigger, Workflow
from .runner import WorkflowRunner

__all__ = [
    "any_of", "job", "on_event", "on_push", "sh", "uses", "wf",
    "Event", "Job", "RunStatus", "Step", "Trigger", "Workflow", "WorkflowRunner",
]
