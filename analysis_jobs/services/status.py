from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from analysis_jobs.models.analysis import Analysis


class AnalysisStatusView(BaseModel):
    status: str
    current_stage: str | None
    compliance_score: float | None
    overall_status: str | None
    total_checks: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None


_STATUS_COLUMNS = (
    Analysis.status,
    Analysis.current_stage,
    Analysis.compliance_score,
    Analysis.overall_status,
    Analysis.total_checks,
    Analysis.started_at,
    Analysis.completed_at,
    Analysis.created_at,
)


def get_analysis_status(db: Session, analysis_id: str) -> AnalysisStatusView | None:
    # polled every few seconds: read only these columns, by primary key, no joins
    row = db.execute(select(*_STATUS_COLUMNS).where(Analysis.id == analysis_id)).mappings().first()
    if row is None:
        return None
    return AnalysisStatusView(**row)
