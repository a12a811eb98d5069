from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from analysis_jobs.core.errors import ReferenceGenerationError
from analysis_jobs.models.analysis import Analysis, AnalysisStatus
from analysis_jobs.services.references import ReferenceGenerator
from analysis_jobs.services.state_machine import PROCESSING_STAGES, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# unique-constraint collisions on report_ref tolerated before giving up
_MAX_CREATE_ATTEMPTS = 3


def create_analysis(
    db: Session,
    references: ReferenceGenerator,
    *,
    document_key: str,
    document_name: str,
    project_id: str | None = None,
) -> Analysis:
    """
    Persist a PENDING analysis with a fresh report reference.

    The generator checks candidates against the table, but two concurrent
    creators can still race between check and insert; the unique index
    catches that and we draw again.
    """
    for attempt in range(1, _MAX_CREATE_ATTEMPTS + 1):
        analysis = Analysis(
            report_ref=references.generate(),
            project_id=project_id,
            document_key=document_key,
            document_name=document_name,
            status=AnalysisStatus.PENDING.value,
        )
        db.add(analysis)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("report_ref %s collided on insert (attempt %d)", analysis.report_ref, attempt)
            continue
        db.refresh(analysis)
        return analysis

    raise ReferenceGenerationError(f"Could not persist a unique report_ref after {_MAX_CREATE_ATTEMPTS} attempts")


def get_analysis(db: Session, analysis_id: str) -> Analysis | None:
    return db.get(Analysis, analysis_id)


def get_status(db: Session, analysis_id: str) -> AnalysisStatus | None:
    value = db.execute(select(Analysis.status).where(Analysis.id == analysis_id)).scalar_one_or_none()
    return AnalysisStatus(value) if value is not None else None


def report_ref_exists(db: Session, report_ref: str) -> bool:
    row = db.execute(select(Analysis.id).where(Analysis.report_ref == report_ref).limit(1)).first()
    return row is not None


# --------------------------------------------------------------------------------------
# Conditional updates. Each one only matches rows in the expected source status,
# so a redelivered job can never apply the same transition twice.
# --------------------------------------------------------------------------------------


def _apply(db: Session, stmt) -> bool:
    # rows are matched in SQL only; in-session objects are not synchronized
    result = db.execute(stmt.execution_options(synchronize_session=False))
    db.commit()
    return result.rowcount == 1


def start_processing(db: Session, analysis_id: str, stage: str, now: datetime) -> bool:
    stmt = (
        update(Analysis)
        .where(Analysis.id == analysis_id, Analysis.status == AnalysisStatus.PENDING.value)
        .values(
            status=AnalysisStatus.CLASSIFYING.value,
            started_at=func.coalesce(Analysis.started_at, now),
            current_stage=stage,
        )
    )
    return _apply(db, stmt)


def advance_stage(
    db: Session,
    analysis_id: str,
    from_status: AnalysisStatus,
    to_status: AnalysisStatus,
    stage: str,
) -> bool:
    stmt = (
        update(Analysis)
        .where(Analysis.id == analysis_id, Analysis.status == from_status.value)
        .values(status=to_status.value, current_stage=stage)
    )
    return _apply(db, stmt)


def set_stage(db: Session, analysis_id: str, stage: str) -> bool:
    stmt = (
        update(Analysis)
        .where(Analysis.id == analysis_id, Analysis.status.in_([s.value for s in PROCESSING_STAGES]))
        .values(current_stage=stage)
    )
    return _apply(db, stmt)


def mark_completed(db: Session, analysis_id: str, now: datetime, stage: str = "Analysis complete") -> bool:
    stmt = (
        update(Analysis)
        .where(Analysis.id == analysis_id, Analysis.status.in_([s.value for s in PROCESSING_STAGES]))
        .values(
            status=AnalysisStatus.COMPLETED.value,
            completed_at=func.coalesce(Analysis.completed_at, now),
            current_stage=stage,
        )
    )
    return _apply(db, stmt)


def mark_failed(db: Session, analysis_id: str, message: str, now: datetime) -> bool:
    stmt = (
        update(Analysis)
        .where(Analysis.id == analysis_id, Analysis.status.not_in([s.value for s in TERMINAL_STATUSES]))
        .values(
            status=AnalysisStatus.FAILED.value,
            completed_at=func.coalesce(Analysis.completed_at, now),
            current_stage=message,
        )
    )
    return _apply(db, stmt)
