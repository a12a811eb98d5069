from __future__ import annotations

import sys

from analysis_jobs.core.config import load_settings
from analysis_jobs.worker.celery_app import celery_app


def main(argv: list[str] | None = None) -> None:
    settings = load_settings()
    args = [
        "worker",
        f"--loglevel={settings.log_level}",
        "--concurrency=1",
        "--prefetch-multiplier=1",
        "-Q",
        settings.queue.queue_name,
    ]
    args.extend(sys.argv[1:] if argv is None else argv)
    celery_app.worker_main(args)


if __name__ == "__main__":
    main()
