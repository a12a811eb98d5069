from __future__ import annotations

from celery import Task
from celery.signals import worker_init, worker_process_init, worker_process_shutdown, worker_shutdown
from celery.utils.log import get_task_logger

from analysis_jobs.core.config import load_settings
from analysis_jobs.resources import Resources
from analysis_jobs.services.queue import job_id_for
from analysis_jobs.services.state_machine import Action
from analysis_jobs.worker.celery_app import PROCESS_ANALYSIS_TASK, celery_app
from analysis_jobs.worker.pipeline import DocumentIntakePipeline
from analysis_jobs.worker.runner import AnalysisJobRunner

logger = get_task_logger(__name__)


class AnalysisTask(Task):
    # one set of handles per worker process
    resources: Resources | None = None

    # stored on AnalysisTask itself: Celery builds a subclass per decorated task
    @staticmethod
    def get_resources() -> Resources:
        if AnalysisTask.resources is None:
            AnalysisTask.resources = Resources.open(load_settings(), with_storage=True)
        return AnalysisTask.resources

    @staticmethod
    def release_resources() -> None:
        if AnalysisTask.resources is not None:
            AnalysisTask.resources.close()
            AnalysisTask.resources = None


def build_runner(resources: Resources) -> AnalysisJobRunner:
    return AnalysisJobRunner(
        resources.session_factory,
        resources.registry,
        DocumentIntakePipeline(resources.storage),
        resources.policy,
    )


@celery_app.task(
    bind=True,
    base=AnalysisTask,
    name=PROCESS_ANALYSIS_TASK,
    acks_late=True,
    reject_on_worker_lost=True,
    # attempts are counted in the job registry, not by Celery
    max_retries=None,
)
def process_analysis(self, analysis_id: str) -> dict:
    job_id = self.request.id or job_id_for(analysis_id)
    resources = self.get_resources()

    runner = build_runner(resources)
    try:
        outcome = runner.run(job_id, analysis_id)
    except Exception as e:
        # registry or database unreachable before anything was decided
        logger.exception("Job %s could not run", job_id)
        outcome = runner.on_error(job_id, analysis_id, self.request.retries + 1, e)

    if outcome.action is Action.RETRY:
        raise self.retry(exc=outcome.error, countdown=outcome.delay)

    if outcome.action is Action.FAIL:
        # keep raise for celery visibility; the record is already FAILED
        raise outcome.error

    return {"ok": True, "job_id": job_id, "analysis_id": analysis_id, "outcome": outcome.action.value}


# --------------------------------------------------------------------------------------
# Worker lifecycle
# --------------------------------------------------------------------------------------


@worker_init.connect
def validate_configuration(**_) -> None:
    # ConfigurationError here stops the worker before it consumes anything
    settings = load_settings()
    settings.validate(require_storage=True)
    q = settings.queue
    logger.info(
        "Analysis worker (%s) listening on %s: %d attempts, backoff %s s, %d starts per %d s, lock %d s",
        settings.env,
        q.queue_name,
        q.max_attempts,
        "/".join(str(s) for s in q.backoff_schedule),
        q.rate_limit_max,
        q.rate_limit_window_seconds,
        q.lock_seconds,
    )


@worker_process_init.connect
def open_resources(**_) -> None:
    AnalysisTask.get_resources()


@worker_process_shutdown.connect
def close_process_resources(**_) -> None:
    AnalysisTask.release_resources()


@worker_shutdown.connect
def close_resources(**_) -> None:
    # solo pool: no child process, handles live in the main process
    logger.info("Shutting down analysis worker")
    AnalysisTask.release_resources()
