from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

from analysis_jobs.core.errors import ConfigurationError, StorageConfigurationError

# repository root, so the worker finds .env regardless of CWD
BASE_DIR = Path(__file__).resolve().parents[2]


def _env(environ: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    v = environ.get(name)
    return v.strip() if v and v.strip() else default


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer (got {raw!r})") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0 (got {value})")
    return value


def _schedule(environ: Mapping[str, str], name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        values = tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a comma-separated list of seconds (got {raw!r})") from None
    if not values or any(v < 0 for v in values):
        raise ConfigurationError(f"{name} must list at least one non-negative delay (got {raw!r})")
    return values


@dataclass(frozen=True)
class StorageSettings:
    # scheme://host/bucket
    bucket_url: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str | None = "us-east-1"

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("BUCKET_URL", self.bucket_url),
                ("BUCKET_ACCESS_KEY", self.access_key),
                ("BUCKET_SECRET_KEY", self.secret_key),
                ("BUCKET_REGION", self.region),
            )
            if not value
        ]
        if missing:
            raise StorageConfigurationError(f"Missing bucket configuration: {', '.join(missing)}")

        url = urlparse(self.bucket_url or "")
        if url.scheme not in ("http", "https") or not url.netloc:
            raise StorageConfigurationError(f"BUCKET_URL must be an http(s) URL (got {self.bucket_url!r})")
        if not self.bucket:
            raise StorageConfigurationError("BUCKET_URL must include the bucket name as its first path segment")

    @property
    def scheme(self) -> str:
        return urlparse(self.bucket_url or "").scheme

    @property
    def host(self) -> str:
        return urlparse(self.bucket_url or "").netloc

    @property
    def bucket(self) -> str:
        path = urlparse(self.bucket_url or "").path
        return path.lstrip("/").split("/")[0]


@dataclass(frozen=True)
class QueueSettings:
    # job registry, dedup markers and the reference counter live here
    redis_url: str | None = None
    broker_url: str | None = None
    result_backend: str | None = None
    queue_name: str = "analysis-processing"

    max_attempts: int = 3
    backoff_schedule: tuple[int, ...] = (30, 60, 120)

    # job starts per rolling window, per worker instance
    rate_limit_max: int = 10
    rate_limit_window_seconds: int = 60

    # how long a claimed job may run before the broker redelivers it
    lock_seconds: int = 600

    completed_retention_seconds: int = 24 * 60 * 60
    completed_retention_count: int = 1000
    failed_retention_seconds: int = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    env: str = "local"
    log_level: str = "INFO"
    report_ref_prefix: str = "BAC"
    queue: QueueSettings = field(default_factory=QueueSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        environ = os.environ if environ is None else environ

        broker_url = _env(environ, "CELERY_BROKER_URL")
        redis_url = _env(environ, "REDIS_URL") or broker_url
        queue = QueueSettings(
            redis_url=redis_url,
            broker_url=broker_url or redis_url,
            result_backend=_env(environ, "CELERY_RESULT_BACKEND") or broker_url or redis_url,
            queue_name=_env(environ, "ANALYSIS_QUEUE_NAME", "analysis-processing"),
            max_attempts=_int(environ, "ANALYSIS_MAX_ATTEMPTS", 3),
            backoff_schedule=_schedule(environ, "ANALYSIS_BACKOFF_SECONDS", (30, 60, 120)),
            rate_limit_max=_int(environ, "ANALYSIS_RATE_LIMIT_MAX", 10),
            rate_limit_window_seconds=_int(environ, "ANALYSIS_RATE_LIMIT_WINDOW_SECONDS", 60),
            lock_seconds=_int(environ, "ANALYSIS_LOCK_SECONDS", 600),
            completed_retention_seconds=_int(environ, "ANALYSIS_COMPLETED_RETENTION_SECONDS", 24 * 60 * 60),
            completed_retention_count=_int(environ, "ANALYSIS_COMPLETED_RETENTION_COUNT", 1000),
            failed_retention_seconds=_int(environ, "ANALYSIS_FAILED_RETENTION_SECONDS", 7 * 24 * 60 * 60),
        )
        storage = StorageSettings(
            bucket_url=_env(environ, "BUCKET_URL"),
            access_key=_env(environ, "BUCKET_ACCESS_KEY"),
            secret_key=_env(environ, "BUCKET_SECRET_KEY"),
            # an explicitly empty BUCKET_REGION is an error, not the default
            region=environ.get("BUCKET_REGION", "us-east-1").strip(),
        )
        return cls(
            database_url=_env(environ, "DATABASE_URL"),
            env=_env(environ, "ENV", "local"),
            log_level=_env(environ, "LOG_LEVEL", "INFO").upper(),
            report_ref_prefix=_env(environ, "REPORT_REF_PREFIX", "BAC"),
            queue=queue,
            storage=storage,
        )

    def validate(self, *, require_storage: bool = True) -> None:
        """
        Fail fast on missing required values.
        The API process does not touch object storage, so it may skip those checks.
        """
        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.queue.redis_url:
            missing.append("REDIS_URL")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
        if require_storage:
            self.storage.validate()


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    if environ is None:
        load_dotenv(BASE_DIR / ".env", override=False)
    return Settings.from_env(environ)
