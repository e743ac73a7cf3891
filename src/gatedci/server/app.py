from __future__ import annotations

import hashlib
import hmac
import json
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from .. import settings
from ..model import Event, RunResult, Workflow
from ..runner import WorkflowRunner

RunnerFactory = Callable[[Workflow], WorkflowRunner]

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    event: str
    branch: str
    repository: str
    sha: Optional[str] = None
    changed_files: Optional[List[str]] = None


class RunAccepted(BaseModel):
    run_id: str
    status: str


class RunResponse(BaseModel):
    id: str
    workflow: str
    status: str
    event: Dict[str, Any]
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# -------------------- Run queue --------------------

@dataclass
class RunRecord:
    id: str
    workflow: str
    event: Event
    status: str = "queued"            # queued | running | not_triggered | <RunStatus>
    result: Optional[RunResult] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None

    def to_response(self) -> RunResponse:
        return RunResponse(
            id=self.id,
            workflow=self.workflow,
            status=self.status,
            event={
                "name": self.event.name,
                "branch": self.event.branch,
                "repository": self.event.repository,
                "sha": self.event.sha,
            },
            jobs=[j.to_dict() for j in self.result.jobs] if self.result else [],
            error=self.error,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )


class RunQueue:
    """
    In-memory run store backed by a single worker thread, so runs requested
    concurrently still execute one after another.

    At most `max_records` runs are kept; the oldest finished ones are
    dropped first.
    """

    def __init__(self, runner: WorkflowRunner, max_records: int = settings.RUN_HISTORY):
        self.runner = runner
        self.max_records = max_records
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gatedci-run")
        self._lock = threading.Lock()
        self._records: Dict[str, RunRecord] = {}
        self._futures: Dict[str, Future] = {}

    def submit(self, event: Event) -> RunRecord:
        record = RunRecord(id=str(uuid.uuid4()), workflow=self.runner.workflow.name, event=event)
        with self._lock:
            self._records[record.id] = record
            fut = self._pool.submit(self._execute, record)
            self._futures[record.id] = fut
            self._evict()
        # outside the lock: the callback runs inline if the run already finished
        fut.add_done_callback(lambda _f, run_id=record.id: self._forget(run_id))
        return record

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._futures.pop(run_id, None)

    def _evict(self) -> None:
        excess = len(self._records) - self.max_records
        if excess <= 0:
            return
        finished = [rid for rid, r in self._records.items() if r.finished_at is not None]
        for rid in finished[:excess]:
            del self._records[rid]

    def _execute(self, record: RunRecord) -> None:
        record.status = "running"
        try:
            result = self.runner.run(record.event)
        except Exception as e:
            record.status = "failed"
            record.error = self.runner.console.mask(str(e))
            self.runner.console.print_exception(e)
        else:
            record.result = result
            record.status = result.status.value if result is not None else "not_triggered"
        finally:
            record.finished_at = now_utc()

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._records.get(run_id)

    def list(self) -> List[RunRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.created_at)

    def wait(self, run_id: str, timeout: float | None = None) -> RunRecord:
        """
        Block until the run finishes.

        Raises:
            KeyError: the run is unknown or has been evicted.
        """
        with self._lock:
            record = self._records[run_id]
            fut = self._futures.get(run_id)
        if fut is not None:
            fut.result(timeout=timeout)
        return record

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)


# -------------------- GitHub payloads --------------------

def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check an `X-Hub-Signature-256: sha256=<hex>` header."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


def event_from_github(event_name: str, payload: Dict[str, Any]) -> Event:
    """
    Build an Event from a GitHub webhook payload.

    push carries `ref` (refs/heads/<branch>) and `after`; pull_request
    carries the base branch and head SHA.
    """
    try:
        repository = payload["repository"]["full_name"]
    except (KeyError, TypeError):
        raise ValueError("payload has no repository.full_name") from None

    if event_name == "pull_request":
        pr = payload.get("pull_request") or {}
        branch = (pr.get("base") or {}).get("ref", "")
        sha = (pr.get("head") or {}).get("sha")
        return Event(name=event_name, branch=branch, repository=repository, sha=sha)

    ref = payload.get("ref") or ""
    branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    changed: Optional[List[str]] = None
    commits = payload.get("commits")
    if isinstance(commits, list):
        files = set()
        for c in commits:
            if not isinstance(c, dict):
                raise ValueError("payload commits must be objects")
            for key in ("added", "modified", "removed"):
                files.update(c.get(key) or [])
        changed = sorted(files)
    return Event(name=event_name, branch=branch, repository=repository, sha=payload.get("after"), changed_files=changed)


# -------------------- App --------------------

def create_app(
    workflow: Workflow,
    *,
    runner_factory: Optional[RunnerFactory] = None,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    runner = runner_factory(workflow) if runner_factory else WorkflowRunner(workflow, secrets=settings.load_secrets())
    queue = RunQueue(runner)
    secret = webhook_secret if webhook_secret is not None else settings.WEBHOOK_SECRET

    app = FastAPI(title="gatedci webhook receiver")
    app.state.queue = queue

    @app.on_event("shutdown")
    def shutdown() -> None:
        queue.shutdown()

    @app.get("/health")
    def health():
        return {"ok": True, "workflow": workflow.name}

    @app.post("/events", response_model=RunAccepted, status_code=202)
    def post_event(req: EventRequest):
        event = Event(
            name=req.event,
            branch=req.branch,
            repository=req.repository,
            sha=req.sha,
            changed_files=req.changed_files,
        )
        record = queue.submit(event)
        return RunAccepted(run_id=record.id, status=record.status)

    @app.post("/webhooks/github", response_model=RunAccepted, status_code=202)
    async def github_webhook(
        request: Request,
        x_github_event: Optional[str] = Header(default=None),
        x_hub_signature_256: Optional[str] = Header(default=None),
    ):
        body = await request.body()
        if secret and not verify_signature(secret, body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")
        if not x_github_event:
            raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")
        if x_github_event == "ping":
            return RunAccepted(run_id="", status="pong")

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="payload must be a JSON object")
        # branch deletions carry no commit to build
        if x_github_event == "push" and payload.get("deleted") is True:
            return RunAccepted(run_id="", status="ignored")

        try:
            event = event_from_github(x_github_event, payload)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        record = queue.submit(event)
        return RunAccepted(run_id=record.id, status=record.status)

    @app.get("/runs", response_model=List[RunResponse])
    def list_runs():
        return [r.to_response() for r in queue.list()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        record = queue.get(run_id)
        if not record:
            raise HTTPException(status_code=404, detail="Run not found")
        return record.to_response()

    return app
