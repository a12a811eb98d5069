from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import redis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from analysis_jobs.core.errors import AnalysisNotFoundError, JobStalledError
from analysis_jobs.models.analysis import AnalysisStatus
from analysis_jobs.services import analyses
from analysis_jobs.services.queue import JobRegistry, RetryPolicy
from analysis_jobs.services.state_machine import Action, JobEvent, failure_event, next_transition
from analysis_jobs.worker.pipeline import AnalysisSnapshot, Pipeline, PipelineContext

logger = logging.getLogger(__name__)

INITIAL_STAGE = "Initializing analysis pipeline"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobOutcome:
    action: Action  # COMPLETE | RETRY | FAIL | SKIP
    attempt: int
    delay: int | None = None
    error: Exception | None = None


class AnalysisJobRunner:
    """
    Runs one delivery of an analysis job.

    Never raises for a failure inside the job: the outcome says whether the
    broker should redeliver (RETRY, with the backoff delay) or not.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        registry: JobRegistry,
        pipeline: Pipeline,
        policy: RetryPolicy | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.registry = registry
        self.pipeline = pipeline
        self.policy = policy or RetryPolicy()
        self._clock = clock

    def run(self, job_id: str, analysis_id: str) -> JobOutcome:
        claim = self.registry.claim(job_id, analysis_id)
        attempt = claim.attempt
        max_attempts = self.policy.max_attempts

        logger.info("Starting job %s for analysis %s (attempt %d/%d)", job_id, analysis_id, attempt, max_attempts)
        if claim.redelivered:
            # the broker owns redelivery; nothing to do but note it
            logger.warning("Job %s has stalled; redelivered as attempt %d", job_id, attempt)

        with self._session_factory() as db:
            analysis = analyses.get_analysis(db, analysis_id)
            if analysis is None:
                msg = f"Analysis {analysis_id} not found"
                logger.error("Job %s: %s; dropping job", job_id, msg)
                self.registry.mark_failed(job_id, msg)
                return JobOutcome(Action.FAIL, attempt, error=AnalysisNotFoundError(msg))

            snapshot = AnalysisSnapshot(
                id=analysis.id,
                report_ref=analysis.report_ref,
                document_key=analysis.document_key,
                document_name=analysis.document_name,
            )
            status = AnalysisStatus(analysis.status)

            if attempt > max_attempts:
                # retries stop at max_attempts, so only stalls get here
                err = JobStalledError(f"Job stalled after {max_attempts} attempts")
                return self._on_failure(db, job_id, analysis_id, attempt, err)

            transition = next_transition(status, JobEvent.PICKED_UP)
            if transition.action is Action.SKIP:
                logger.info("Analysis %s is already %s; skipping job %s", analysis_id, status.value, job_id)
                self._settle(job_id, status)
                return JobOutcome(Action.SKIP, attempt)

            try:
                status = self._start(db, analysis_id, transition.action, status)
                if status is None:
                    return JobOutcome(Action.SKIP, attempt)

                ctx = PipelineContext(db, snapshot, status)
                self.pipeline.run(ctx)

                next_transition(ctx.status, JobEvent.SUCCEEDED)
                completed = analyses.mark_completed(db, analysis_id, self._clock())
            except Exception as e:
                db.rollback()
                return self._on_failure(db, job_id, analysis_id, attempt, e)

            if not completed:
                # another delivery finished the record while this one ran
                current = analyses.get_status(db, analysis_id) or status
                logger.warning("Analysis %s was already %s when job %s finished", analysis_id, current.value, job_id)
                self._settle(job_id, current)
                return JobOutcome(Action.SKIP, attempt)

        self.registry.mark_completed(job_id)
        logger.info("Job %s completed successfully", job_id)
        return JobOutcome(Action.COMPLETE, attempt)

    def _start(self, db: Session, analysis_id: str, action: Action, status: AnalysisStatus) -> AnalysisStatus | None:
        if action is Action.RESUME:
            logger.info("Analysis %s already %s; resuming", analysis_id, status.value)
            return status

        if analyses.start_processing(db, analysis_id, INITIAL_STAGE, self._clock()):
            logger.info("Analysis %s set to %s", analysis_id, AnalysisStatus.CLASSIFYING.value)
            return AnalysisStatus.CLASSIFYING

        # lost a race with another delivery; go by what is persisted
        current = analyses.get_status(db, analysis_id)
        if current is None or next_transition(current, JobEvent.PICKED_UP).action is Action.SKIP:
            return None
        return current

    def _on_failure(self, db: Session, job_id: str, analysis_id: str, attempt: int, error: Exception) -> JobOutcome:
        max_attempts = self.policy.max_attempts
        logger.error("Job %s failed (attempt %d/%d): %s", job_id, attempt, max_attempts, error)

        status = analyses.get_status(db, analysis_id) or AnalysisStatus.PENDING
        transition = next_transition(status, failure_event(attempt, max_attempts))

        if transition.action is Action.RETRY:
            delay = self.policy.delay_for(attempt)
            self.registry.mark_delayed(job_id, delay, str(error))
            logger.info("Retrying job %s in %ds", job_id, delay)
            return JobOutcome(Action.RETRY, attempt, delay=delay, error=error)

        if transition.action is Action.FAIL:
            logger.error("All retries exhausted for analysis %s, marking as FAILED", analysis_id)
            analyses.mark_failed(db, analysis_id, f"Failed: {error}", self._clock())
            self.registry.mark_failed(job_id, str(error))
            return JobOutcome(Action.FAIL, attempt, error=error)

        self._settle(job_id, status)
        return JobOutcome(Action.SKIP, attempt, error=error)

    def on_error(self, job_id: str, analysis_id: str, attempt: int, error: Exception) -> JobOutcome:
        """
        `run` itself raised (database or registry unreachable). Record the retry
        or the final failure wherever that is still possible, so the job never
        stays `active` in the registry.
        """
        max_attempts = self.policy.max_attempts
        logger.error("Job %s could not run (attempt %d/%d): %s", job_id, attempt, max_attempts, error)

        if failure_event(attempt, max_attempts) is JobEvent.ATTEMPT_FAILED:
            delay = self.policy.delay_for(attempt)
            try:
                self.registry.mark_delayed(job_id, delay, str(error))
            except redis.RedisError:
                logger.exception("Could not record retry of job %s", job_id)
            return JobOutcome(Action.RETRY, attempt, delay=delay, error=error)

        logger.error("All retries exhausted for analysis %s, marking as FAILED", analysis_id)
        try:
            with self._session_factory() as db:
                analyses.mark_failed(db, analysis_id, f"Failed: {error}", self._clock())
        except SQLAlchemyError:
            logger.exception("Could not mark analysis %s as FAILED", analysis_id)
        try:
            self.registry.mark_failed(job_id, str(error))
        except redis.RedisError:
            logger.exception("Could not record failure of job %s", job_id)
        return JobOutcome(Action.FAIL, attempt, error=error)

    def _settle(self, job_id: str, status: AnalysisStatus) -> None:
        # keep the registry in line with a record that is already terminal
        if status is AnalysisStatus.FAILED:
            self.registry.mark_failed(job_id, "analysis already failed")
        else:
            self.registry.mark_completed(job_id)
