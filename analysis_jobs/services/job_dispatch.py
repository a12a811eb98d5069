from __future__ import annotations

from analysis_jobs.worker.tasks import process_analysis


def dispatch_analysis(job_id: str, analysis_id: str) -> None:
    """
    Send the Celery message for an analysis job; the job id doubles as task id.
    Uses the task object (.apply_async), not celery_app.send_task, so eager mode works.
    """
    process_analysis.apply_async(kwargs={"analysis_id": analysis_id}, task_id=job_id)
