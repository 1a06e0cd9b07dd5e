from __future__ import annotations

import io
from datetime import datetime
from pathlib import Path
from typing import Any, List
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..agent.orchestrator import AutomationRunner, RunInProgressError, get_runner
from ..models import Run, RunLog, StepRecord, get_db, init_db
from ..storage.base import StorageBackend
from ..storage.local_store import get_storage

app = FastAPI(title="healing-runner")


@app.on_event("startup")
def _startup() -> None:
    init_db()


class StartRunRequest(BaseModel):
    filename: str | None = None


class RunSummary(BaseModel):
    id: str
    source_file: str
    status: str
    status_reason: str | None
    started_at: datetime
    finished_at: datetime | None
    total_steps: int
    passed: int
    failed: int
    skipped: int


class StepSummary(BaseModel):
    index: int
    step: str
    action: str
    target: str
    status: str
    remarks: str
    actual_output: str
    failure_class: str | None
    screenshot_url: str | None = None


class RunLogEntry(BaseModel):
    timestamp: datetime
    level: str
    message: str


def _resolve_source(filename: str | None) -> Path:
    if filename:
        path = Path(filename)
        if not path.exists():
            raise HTTPException(status_code=404, detail=f"Instruction file not found: {filename}")
        return path
    candidates = sorted(p for p in Path.cwd().glob("*.xlsx") if not p.name.startswith("~$"))
    if not candidates:
        raise HTTPException(status_code=400, detail="No .xlsx instruction file found")
    return candidates[0]


@app.post("/runs", status_code=status.HTTP_202_ACCEPTED)
async def start_run(payload: StartRunRequest | None = None, runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    source = _resolve_source(payload.filename if payload else None)
    try:
        runner.start(source)
    except RunInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"started": True, "source": str(source)}


@app.post("/runs/pause")
def pause_run(runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    runner.pause()
    return runner.status()


@app.post("/runs/resume")
def resume_run(runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    runner.resume()
    return runner.status()


@app.post("/runs/stop")
def stop_run(runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    runner.stop()
    return runner.status()


@app.get("/status")
def get_status(runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    return runner.status()


@app.get("/elements")
async def list_elements(runner: AutomationRunner = Depends(get_runner)) -> dict[str, Any]:
    if not runner.running:
        return {"elements": [], "count": 0}
    elements = await runner.list_current_elements()
    return {"elements": elements, "count": len(elements)}


@app.get("/api/runs", response_model=List[RunSummary])
def list_runs(db: Session = Depends(get_db)):
    runs = db.query(Run).order_by(Run.started_at.desc()).limit(50).all()
    return [
        RunSummary(
            id=str(r.id),
            source_file=r.source_file,
            status=r.status,
            status_reason=r.status_reason,
            started_at=r.started_at,
            finished_at=r.finished_at,
            total_steps=r.total_steps or 0,
            passed=r.passed or 0,
            failed=r.failed or 0,
            skipped=r.skipped or 0,
        )
        for r in runs
    ]


@app.get("/api/runs/{run_id}/steps", response_model=List[StepSummary])
def list_run_steps(run_id: UUID, db: Session = Depends(get_db)):
    run = db.get(Run, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    steps = (
        db.query(StepRecord)
        .filter(StepRecord.run_id == run_id)
        .order_by(StepRecord.step_index.asc())
        .all()
    )
    return [
        StepSummary(
            index=s.step_index,
            step=s.step_id,
            action=s.action,
            target=s.target,
            status=s.status,
            remarks=s.remarks,
            actual_output=s.actual_output,
            failure_class=s.failure_class,
            screenshot_url=f"/assets/{run_id}/{s.step_index}/screenshot" if s.screenshot_key else None,
        )
        for s in steps
    ]


@app.get("/api/runs/{run_id}/logs", response_model=List[RunLogEntry])
def list_run_logs(run_id: UUID, db: Session = Depends(get_db)):
    run = db.get(Run, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    logs = (
        db.query(RunLog)
        .filter(RunLog.run_id == run_id)
        .order_by(RunLog.created_at.asc())
        .all()
    )
    return [RunLogEntry(timestamp=log.created_at, level=log.level, message=log.message) for log in logs]


@app.get("/assets/{run_id}/{step_index}/screenshot")
def get_screenshot(
    run_id: UUID,
    step_index: int,
    db: Session = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
) -> StreamingResponse:
    step = (
        db.query(StepRecord)
        .filter(StepRecord.run_id == run_id, StepRecord.step_index == step_index)
        .first()
    )
    if step is None or not step.screenshot_key:
        raise HTTPException(status_code=404, detail="Step not found")

    image_bytes = storage.get_bytes(step.screenshot_key)
    return StreamingResponse(io.BytesIO(image_bytes), media_type="image/png")
