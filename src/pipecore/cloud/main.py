from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional

import sqlalchemy as sa
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool

from ..dag import PipelineGraph
from ..errors import DeclarationError, PipelineLoadError
from ..loader import declaration_to_specs
from ..model import PipelineRun, utcnow
from ..runner import Orchestrator, configure_tracker
from ..scheduler import RunHandle
from ..schemas import (
    CreateRunRequest,
    CreateRunResponse,
    DeploymentOut,
    ErrorOut,
    JobResultOut,
    RunResponse,
)
from .db import SessionLocal, engine
from .models import Base, JobResultRow, Run
from .settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="pipecore run status API")

# runs executing in this process, by run id
_active: Dict[str, RunHandle] = {}
_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator(settings=settings, tracker=configure_tracker(settings))
    return _orchestrator

# -------------------- Startup --------------------

@app.on_event("startup")
async def startup() -> None:
    # Creates tables if they don't exist.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

# -------------------- Background execution --------------------

async def _store_result(run_id: str, result: PipelineRun) -> None:
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if run is None:
                return
            run.status = result.status.value
            run.cancelled = result.cancelled
            run.faults = [str(f) for f in result.faults]
            run.finished_at = result.finished_at or utcnow()
            for name, r in result.results.items():
                s.add(JobResultRow(
                    run_id=run_id,
                    job_name=name,
                    status=r.status.value,
                    outputs=dict(r.outputs),
                    error=r.error.to_dict() if r.error else None,
                    started_at=r.started_at,
                    finished_at=r.finished_at,
                ))


async def _mark_error(run_id: str, message: str) -> None:
    async with SessionLocal() as s:
        async with s.begin():
            run = await s.get(Run, run_id)
            if run is not None:
                run.status = "error"
                run.faults = [message]
                run.finished_at = utcnow()


async def execute_run(
    run_id: str,
    graph: PipelineGraph,
    req: CreateRunRequest,
    orchestrator: Orchestrator,
    handle: RunHandle,
) -> None:
    try:
        result = await run_in_threadpool(
            orchestrator.run,
            graph,
            req.context.to_context(run_id),
            req.secrets,
            approvals=req.approvals,
            handle=handle,
        )
        await _store_result(run_id, result)
    except Exception as e:
        logger.exception("run %s crashed", run_id)
        await _mark_error(run_id, f"{type(e).__name__}: {e}")
    finally:
        _active.pop(run_id, None)

# -------------------- Endpoints --------------------

@app.post("/runs", response_model=CreateRunResponse, status_code=202)
async def create_run(
    req: CreateRunRequest,
    background: BackgroundTasks,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        name, jobs = declaration_to_specs(req.pipeline)
        graph = orchestrator.build(jobs, name=name)
    except PipelineLoadError as e:
        raise HTTPException(status_code=422, detail={"message": e.message, "problems": e.details})
    except DeclarationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": f"{len(e.problems)} problem(s) in pipeline declaration",
                "problems": [{"kind": p.kind, "message": str(p)} for p in e.problems],
            },
        )

    run_id = uuid.uuid4().hex
    async with SessionLocal() as s:
        async with s.begin():
            s.add(Run(id=run_id, pipeline=graph.name, status="running", cancelled=False, faults=[]))

    handle = RunHandle()
    _active[run_id] = handle
    background.add_task(execute_run, run_id, graph, req, orchestrator, handle)
    return CreateRunResponse(run_id=run_id, status="running")


@app.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
        if not run:
            raise HTTPException(status_code=404, detail="Run not found")

        rows = (
            await s.execute(
                sa.select(JobResultRow).where(JobResultRow.run_id == run_id).order_by(JobResultRow.id)
            )
        ).scalars().all()

    return RunResponse(
        id=run.id,
        pipeline=run.pipeline,
        status=run.status,
        cancelled=run.cancelled,
        jobs=[
            JobResultOut(
                job_name=r.job_name,
                status=r.status,
                outputs=r.outputs or {},
                error=ErrorOut(**r.error) if r.error else None,
                started_at=r.started_at,
                finished_at=r.finished_at,
            )
            for r in rows
        ],
        faults=list(run.faults or []),
        created_at=run.created_at,
        finished_at=run.finished_at,
    )


@app.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    handle = _active.get(run_id)
    if handle is not None:
        handle.cancel()
        return {"run_id": run_id, "status": "cancelling"}

    async with SessionLocal() as s:
        run = await s.get(Run, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    raise HTTPException(status_code=409, detail=f"Run already {run.status}")


@app.get("/deployments/{environment}/{app_name}", response_model=DeploymentOut)
async def get_deployment(
    environment: str,
    app_name: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    record = orchestrator.tracker.current(environment, app_name)
    if record is None:
        raise HTTPException(status_code=404, detail="No deployment recorded")
    return DeploymentOut(**record.to_dict())
