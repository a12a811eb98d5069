"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from analysis_jobs.core.config import Settings
from analysis_jobs.db.base import Base
from analysis_jobs.db.session import make_session_factory
from analysis_jobs.models.analysis import Analysis
from analysis_jobs.services.analyses import create_analysis
from analysis_jobs.services.queue import JobRegistry, Retention
from analysis_jobs.services.references import RedisSequence, ReferenceGenerator

TEST_ENV = {
    "DATABASE_URL": "sqlite://",
    "REDIS_URL": "redis://localhost:6379/15",
    "BUCKET_URL": "https://s3.example.com/docs",
    "BUCKET_ACCESS_KEY": "AKIDEXAMPLE",
    "BUCKET_SECRET_KEY": "secret-example-key",
    "BUCKET_REGION": "us-east-1",
}


class FakeClock:
    """Datetime clock for the runner, epoch seconds for the registry."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self.start = self.now

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    @property
    def elapsed(self) -> float:
        return (self.now - self.start).total_seconds()


@pytest.fixture()
def env() -> dict[str, str]:
    return dict(TEST_ENV)


@pytest.fixture()
def settings(env) -> Settings:
    return Settings.from_env(env)


@pytest.fixture()
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(redis_client, clock) -> JobRegistry:
    return JobRegistry(redis_client, retention=Retention(), lock_seconds=600, clock=clock.time)


@pytest.fixture()
def references(redis_client) -> ReferenceGenerator:
    return ReferenceGenerator(lambda ref: False, RedisSequence(redis_client))


@pytest.fixture()
def make_analysis(session_factory, references):
    def _make(document_key: str = "uploads/plan.pdf", document_name: str = "plan.pdf") -> Analysis:
        with session_factory() as db:
            return create_analysis(db, references, document_key=document_key, document_name=document_name)

    return _make
