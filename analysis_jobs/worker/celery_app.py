from __future__ import annotations

from celery import Celery

from analysis_jobs.core.config import Settings, load_settings

PROCESS_ANALYSIS_TASK = "analysis.process"

_RATE_UNITS = (("s", 1), ("m", 60), ("h", 3600))


def rate_limit_expression(max_starts: int, window_seconds: int) -> str:
    """Celery rate limit string for `max_starts` task starts per `window_seconds`."""
    for unit, seconds in _RATE_UNITS:
        if window_seconds == seconds:
            return f"{max_starts}/{unit}"
    return f"{max_starts / window_seconds:g}/s"


def create_celery_app(settings: Settings) -> Celery:
    q = settings.queue

    app = Celery(
        "analysis_jobs",
        broker=q.broker_url,
        backend=q.result_backend,
        include=["analysis_jobs.worker.tasks"],
    )

    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        enable_utc=True,
        timezone="UTC",
        task_track_started=True,
        result_extended=True,
        result_expires=q.completed_retention_seconds,
        task_default_queue=q.queue_name,
        # ack only after the task returns; a worker that dies mid-job leaves
        # the message to be redelivered once the visibility timeout passes
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        broker_transport_options={"visibility_timeout": q.lock_seconds},
        # one job at a time per worker instance
        worker_concurrency=1,
        worker_prefetch_multiplier=1,
        task_annotations={
            PROCESS_ANALYSIS_TASK: {
                "rate_limit": rate_limit_expression(q.rate_limit_max, q.rate_limit_window_seconds),
            }
        },
        # a broker that is down at startup is fatal
        broker_connection_retry_on_startup=False,
    )
    return app


# IMPORTANT: the variable name MUST be `celery_app` (celery -A analysis_jobs.worker.celery_app)
celery_app = create_celery_app(load_settings())

__all__ = ["celery_app", "create_celery_app", "rate_limit_expression", "PROCESS_ANALYSIS_TASK"]
