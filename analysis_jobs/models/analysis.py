from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from analysis_jobs.db.base import Base


class AnalysisStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLASSIFYING = "CLASSIFYING"
    ANALYSING = "ANALYSING"
    VALIDATING = "VALIDATING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _new_id() -> str:
    return str(uuid.uuid4())


class Analysis(Base):
    __tablename__ = "analyses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    report_ref: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    # owned by the project/CRUD layer; no FK here
    project_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    # source document
    document_key: Mapped[str] = mapped_column(Text, nullable=False)  # object key in the bucket
    document_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # status (written by the worker only, after creation)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=AnalysisStatus.PENDING.value, index=True)
    current_stage: Mapped[str | None] = mapped_column(Text, nullable=True)

    # summary scores
    compliance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    overall_status: Mapped[str | None] = mapped_column(String(16), nullable=True)  # PASS|CONDITIONAL|FAIL
    critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compliant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_assessed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
