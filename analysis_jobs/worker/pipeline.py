from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from analysis_jobs.models.analysis import AnalysisStatus
from analysis_jobs.services import analyses
from analysis_jobs.services.state_machine import JobEvent, next_transition
from analysis_jobs.services.storage import StorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisSnapshot:
    id: str
    report_ref: str
    document_key: str
    document_name: str


class PipelineContext:
    """What a pipeline may do to the record: relabel the stage or move to the next one."""

    def __init__(self, db: Session, analysis: AnalysisSnapshot, status: AnalysisStatus) -> None:
        self.db = db
        self.analysis = analysis
        self.status = status

    def set_stage(self, stage: str) -> None:
        analyses.set_stage(self.db, self.analysis.id, stage)

    def advance(self, stage: str) -> AnalysisStatus:
        transition = next_transition(self.status, JobEvent.STAGE_ADVANCED)
        if analyses.advance_stage(self.db, self.analysis.id, self.status, transition.target, stage):
            self.status = transition.target
        else:
            # someone else already moved it; carry on from what is persisted
            self.status = analyses.get_status(self.db, self.analysis.id) or self.status
        return self.status


class Pipeline(Protocol):
    def run(self, ctx: PipelineContext) -> None: ...


def intake_manifest_key(analysis_id: str) -> str:
    return f"analyses/{analysis_id}/intake.json"


class DocumentIntakePipeline:
    """
    Placeholder for the analysis stages: make sure the source document is
    retrievable and record what was received. Re-running it overwrites the
    same manifest, so redelivery is harmless.
    """

    def __init__(self, storage: StorageClient) -> None:
        self.storage = storage

    def run(self, ctx: PipelineContext) -> None:
        a = ctx.analysis

        ctx.set_stage("Fetching source document")
        data = self.storage.fetch(a.document_key)

        manifest = {
            "analysis_id": a.id,
            "report_ref": a.report_ref,
            "document_key": a.document_key,
            "document_name": a.document_name,
            "size": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
        }
        self.storage.store(
            intake_manifest_key(a.id),
            json.dumps(manifest, ensure_ascii=False).encode("utf-8"),
            "application/json",
        )
        logger.info("Stored intake manifest for %s (%d bytes source)", a.report_ref, len(data))
