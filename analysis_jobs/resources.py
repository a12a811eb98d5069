from __future__ import annotations

import logging

import redis
from sqlalchemy.engine import Engine

from analysis_jobs.core.config import Settings
from analysis_jobs.db.session import make_engine, make_session_factory
from analysis_jobs.services.analyses import report_ref_exists
from analysis_jobs.services.queue import AnalysisQueue, Dispatch, JobRegistry, Retention, RetryPolicy
from analysis_jobs.services.references import RedisSequence, ReferenceGenerator
from analysis_jobs.services.storage import StorageClient

logger = logging.getLogger(__name__)


class Resources:
    """
    Process-wide handles (database engine, Redis, storage client) and the
    services built on them. Constructed explicitly, passed to whoever needs
    them, and closed once on shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        engine: Engine,
        redis_client: redis.Redis,
        storage: StorageClient | None = None,
        dispatch: Dispatch | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.session_factory = make_session_factory(engine)
        self.redis = redis_client
        self.storage = storage

        self.policy = RetryPolicy.from_settings(settings.queue)
        self.registry = JobRegistry(
            redis_client,
            retention=Retention.from_settings(settings.queue),
            lock_seconds=settings.queue.lock_seconds,
        )
        self.queue = AnalysisQueue(self.registry, dispatch, self.policy) if dispatch is not None else None
        self.references = ReferenceGenerator(
            self._report_ref_exists,
            RedisSequence(redis_client),
            prefix=settings.report_ref_prefix,
        )

    def _report_ref_exists(self, report_ref: str) -> bool:
        with self.session_factory() as db:
            return report_ref_exists(db, report_ref)

    @classmethod
    def open(cls, settings: Settings, *, dispatch: Dispatch | None = None, with_storage: bool = False) -> Resources:
        settings.validate(require_storage=with_storage)

        engine = make_engine(settings.database_url)
        client = redis.Redis.from_url(settings.queue.redis_url, decode_responses=True)
        storage = StorageClient(settings.storage) if with_storage else None

        logger.info("Resources opened (storage=%s)", "on" if storage else "off")
        return cls(settings, engine=engine, redis_client=client, storage=storage, dispatch=dispatch)

    def close(self) -> None:
        if self.storage is not None:
            self.storage.close()
        self.redis.close()
        self.engine.dispose()
        logger.info("Resources closed")
