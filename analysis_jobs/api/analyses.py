from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from analysis_jobs.core.errors import QueueUnavailableError
from analysis_jobs.db.session import session_scope
from analysis_jobs.resources import Resources
from analysis_jobs.services.analyses import create_analysis, get_analysis
from analysis_jobs.services.queue import AnalysisQueue
from analysis_jobs.services.state_machine import is_terminal
from analysis_jobs.services.status import AnalysisStatusView, get_analysis_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analyses", tags=["analyses"])


def get_resources(request: Request) -> Resources:
    return request.app.state.resources


def get_db(resources: Resources = Depends(get_resources)):
    yield from session_scope(resources.session_factory)


def get_queue(resources: Resources = Depends(get_resources)) -> AnalysisQueue:
    if resources.queue is None:
        raise HTTPException(status_code=503, detail="Queue not configured")
    return resources.queue


class AnalysisCreateRequest(BaseModel):
    document_key: str = Field(min_length=1)
    document_name: str = Field(min_length=1, max_length=255)
    project_id: str | None = None


class AnalysisCreateResponse(BaseModel):
    ok: bool
    analysis_id: str
    report_ref: str
    job_id: str
    status: str


class EnqueueResponse(BaseModel):
    ok: bool
    analysis_id: str
    job_id: str


@router.post("", response_model=AnalysisCreateResponse, status_code=201)
def create_and_enqueue(
    req: AnalysisCreateRequest,
    resources: Resources = Depends(get_resources),
    db: Session = Depends(get_db),
    queue: AnalysisQueue = Depends(get_queue),
) -> AnalysisCreateResponse:
    analysis = create_analysis(
        db,
        resources.references,
        document_key=req.document_key,
        document_name=req.document_name,
        project_id=req.project_id,
    )
    try:
        job_id = queue.enqueue(analysis.id)
    except QueueUnavailableError as e:
        # record stays PENDING; POST /analyses/{id}/enqueue picks it up again
        logger.error("Enqueue failed for analysis %s: %s", analysis.id, e)
        raise HTTPException(status_code=503, detail=f"Analysis {analysis.id} created but not queued: {e}")

    return AnalysisCreateResponse(
        ok=True,
        analysis_id=analysis.id,
        report_ref=analysis.report_ref,
        job_id=job_id,
        status=analysis.status,
    )


@router.post("/{analysis_id}/enqueue", response_model=EnqueueResponse)
def enqueue_existing(
    analysis_id: str,
    db: Session = Depends(get_db),
    queue: AnalysisQueue = Depends(get_queue),
) -> EnqueueResponse:
    analysis = get_analysis(db, analysis_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    try:
        # a finished job for a record that never finished must not block a new one
        job_id = queue.enqueue(analysis_id, replace_finished=not is_terminal(analysis.status))
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return EnqueueResponse(ok=True, analysis_id=analysis_id, job_id=job_id)


@router.get("/{analysis_id}/status", response_model=AnalysisStatusView)
def get_status(analysis_id: str, db: Session = Depends(get_db)) -> AnalysisStatusView:
    view = get_analysis_status(db, analysis_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return view
