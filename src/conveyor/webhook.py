"""HTTP trigger and run history API."""
from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from . import __version__
from .errors import PipelineBusy, SourceUnavailable, UnknownPipeline
from .models import Run, utcnow
from .persistence.store import RunStore
from .scheduler import PipelineScheduler

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def _expected_key() -> str:
    return os.getenv("CONVEYOR_API_KEY", "test-key")


async def require_api_key(api_key: str | None = Security(API_KEY_HEADER)) -> str:
    if not api_key or api_key != _expected_key():
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key


class RevisionNotification(BaseModel):
    revision: str = Field(..., min_length=1, description="Revision id reported by the source, e.g. a commit sha")


class TriggerRequest(BaseModel):
    revision: Optional[str] = Field(default=None, description="Revision to build; latest when omitted")


class NotifyResponse(BaseModel):
    pipeline: str
    revision: str
    status: str
    run_id: Optional[int] = None


class StageView(BaseModel):
    stage_name: str
    status: str
    attempts: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    log_ref: Optional[str] = None


class RunView(BaseModel):
    run_id: int
    pipeline: str
    revision_id: str
    definition_version: str
    status: str
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    stages: List[StageView] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run) -> "RunView":
        return cls(
            run_id=run.run_id,
            pipeline=run.pipeline,
            revision_id=run.revision_id,
            definition_version=run.definition_version,
            status=run.status.value,
            created_at=run.created_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
            error=run.error,
            stages=[
                StageView(
                    stage_name=stage.stage_name,
                    status=stage.status.value,
                    attempts=stage.attempts,
                    started_at=stage.started_at,
                    finished_at=stage.finished_at,
                    error=stage.error,
                    log_ref=stage.log_ref,
                )
                for stage in run.stages
            ],
        )


class RunDetail(RunView):
    events: List[Dict[str, Any]] = Field(default_factory=list)


def get_scheduler(request: Request) -> PipelineScheduler:
    return request.app.state.scheduler


def get_store(request: Request) -> RunStore:
    return request.app.state.store


router = APIRouter()


@router.get("/health")
async def healthcheck(scheduler: PipelineScheduler = Depends(get_scheduler)) -> dict[str, Any]:
    return {"status": "ok", "pipelines": scheduler.pipelines(), "timestamp": utcnow().isoformat()}


@router.post("/pipelines/{name}/revisions", response_model=NotifyResponse, status_code=202)
def notify_revision(
    name: str,
    payload: RevisionNotification,
    _: str = Depends(require_api_key),
    scheduler: PipelineScheduler = Depends(get_scheduler),
) -> NotifyResponse:
    try:
        run = scheduler.notify(name, payload.revision)
    except UnknownPipeline as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PipelineBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _notify_response(name, payload.revision, run)


@router.post("/pipelines/{name}/runs", response_model=NotifyResponse, status_code=202)
def trigger_run(
    name: str,
    payload: Optional[TriggerRequest] = None,
    _: str = Depends(require_api_key),
    scheduler: PipelineScheduler = Depends(get_scheduler),
) -> NotifyResponse:
    revision = payload.revision if payload else None
    try:
        if revision is None:
            revision = scheduler.services(name).source.latest_revision(name).id
        run = scheduler.notify(name, revision)
    except UnknownPipeline as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SourceUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except PipelineBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return _notify_response(name, revision, run)


@router.get("/pipelines/{name}/runs", response_model=List[RunView])
def list_runs(
    name: str,
    limit: int = Query(default=20, ge=1, le=500),
    _: str = Depends(require_api_key),
    scheduler: PipelineScheduler = Depends(get_scheduler),
    store: RunStore = Depends(get_store),
) -> List[RunView]:
    try:
        scheduler.definition(name)
    except UnknownPipeline as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [RunView.from_run(run) for run in store.list_runs(pipeline=name, limit=limit)]


@router.get("/runs/{run_id}", response_model=RunDetail)
def get_run(
    run_id: int,
    _: str = Depends(require_api_key),
    store: RunStore = Depends(get_store),
) -> RunDetail:
    try:
        run = store.load_run(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from exc
    view = RunView.from_run(run)
    return RunDetail(**view.model_dump(), events=store.events(run_id))


@router.post("/runs/{run_id}/abort", status_code=202)
def abort_run(
    run_id: int,
    _: str = Depends(require_api_key),
    scheduler: PipelineScheduler = Depends(get_scheduler),
    store: RunStore = Depends(get_store),
) -> dict[str, Any]:
    try:
        run = store.load_run(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from exc
    if run.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Run {run_id} is already {run.status.value}")
    return {"run_id": run_id, "abort_requested": scheduler.abort(run_id)}


def _notify_response(pipeline: str, revision: str, run: Optional[Run]) -> NotifyResponse:
    if run is None:
        return NotifyResponse(pipeline=pipeline, revision=revision, status="coalesced")
    return NotifyResponse(pipeline=pipeline, revision=revision, status="started", run_id=run.run_id)


def create_app(scheduler: PipelineScheduler, store: RunStore) -> FastAPI:
    app = FastAPI(title="Conveyor", version=__version__)
    app.state.scheduler = scheduler
    app.state.store = store
    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"service": "conveyor"}

    return app


__all__ = ["create_app", "require_api_key", "router"]
