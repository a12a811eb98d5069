import logging

import pytest
from sqlalchemy.exc import OperationalError

from analysis_jobs.core.errors import AnalysisNotFoundError, JobStalledError, StorageError
from analysis_jobs.models.analysis import AnalysisStatus
from analysis_jobs.services import analyses
from analysis_jobs.services.analyses import get_analysis, get_status
from analysis_jobs.services.queue import RetryPolicy, job_id_for
from analysis_jobs.services.state_machine import Action
from analysis_jobs.worker.runner import AnalysisJobRunner


class ScriptedPipeline:
    """Fails the first `failures` runs, then succeeds; records what it saw."""

    def __init__(self, failures=0, error="bucket timeout", stages=(), clock=None):
        self.failures = failures
        self.error = error
        self.stages = stages
        self.clock = clock
        self.calls = 0
        self.seen = []

    def run(self, ctx):
        self.calls += 1
        self.seen.append(get_status(ctx.db, ctx.analysis.id))
        for stage in self.stages:
            ctx.advance(stage)
        if self.clock is not None:
            self.clock.advance(5)
        if self.calls <= self.failures:
            raise StorageError(self.error)


def drive(runner, clock, job_id, analysis_id, limit=10):
    """Play the broker: redeliver after each RETRY once the backoff has elapsed."""
    outcomes = []
    for _ in range(limit):
        outcome = runner.run(job_id, analysis_id)
        outcomes.append(outcome)
        if outcome.action is not Action.RETRY:
            break
        clock.advance(outcome.delay)
    return outcomes


@pytest.fixture()
def job(registry, make_analysis):
    analysis = make_analysis()
    job_id = job_id_for(analysis.id)
    registry.create(job_id, analysis.id, RetryPolicy())
    return job_id, analysis.id


def load(session_factory, analysis_id):
    with session_factory() as db:
        return get_analysis(db, analysis_id)


def test_first_delivery_runs_to_completed(session_factory, registry, clock, job):
    job_id, analysis_id = job
    pipeline = ScriptedPipeline(clock=clock)
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)

    outcome = runner.run(job_id, analysis_id)

    assert (outcome.action, outcome.attempt) == (Action.COMPLETE, 1)
    assert pipeline.seen == [AnalysisStatus.CLASSIFYING]
    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.COMPLETED.value
    assert row.current_stage == "Analysis complete"
    assert row.started_at is not None
    assert row.started_at < row.completed_at
    assert registry.get(job_id).state == "completed"


def test_pipeline_can_walk_the_processing_stages(session_factory, registry, clock, job):
    job_id, analysis_id = job
    pipeline = ScriptedPipeline(stages=("Checking clauses", "Validating findings", "Writing report"))
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)

    assert runner.run(job_id, analysis_id).action is Action.COMPLETE
    assert load(session_factory, analysis_id).status == AnalysisStatus.COMPLETED.value


def test_always_failing_job_gets_exactly_three_attempts(session_factory, registry, clock, job):
    job_id, analysis_id = job
    pipeline = ScriptedPipeline(failures=99)
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)

    outcomes = drive(runner, clock, job_id, analysis_id)

    assert [o.action for o in outcomes] == [Action.RETRY, Action.RETRY, Action.FAIL]
    assert [o.delay for o in outcomes[:2]] == [30, 60]
    assert pipeline.calls == 3
    assert clock.elapsed == 90

    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.FAILED.value
    assert row.current_stage == "Failed: bucket timeout"
    assert row.completed_at is not None

    info = registry.get(job_id)
    assert (info.state, info.attempts, info.last_error) == ("failed", 3, "bucket timeout")


def test_record_stays_in_progress_between_retries(session_factory, registry, clock, job):
    job_id, analysis_id = job
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(failures=1), clock=clock)

    outcome = runner.run(job_id, analysis_id)

    assert outcome.action is Action.RETRY
    assert load(session_factory, analysis_id).status == AnalysisStatus.CLASSIFYING.value
    assert registry.get(job_id).state == "delayed"


def test_transient_failures_then_success(session_factory, registry, clock, job):
    job_id, analysis_id = job
    pipeline = ScriptedPipeline(failures=2)
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)

    outcomes = drive(runner, clock, job_id, analysis_id)

    assert [o.action for o in outcomes] == [Action.RETRY, Action.RETRY, Action.COMPLETE]
    assert outcomes[-1].attempt == 3
    assert clock.elapsed == 90
    # redeliveries resume instead of restarting from PENDING
    assert pipeline.seen == [AnalysisStatus.CLASSIFYING] * 3

    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.COMPLETED.value
    assert row.started_at == clock.start.replace(tzinfo=None)
    assert row.started_at <= row.completed_at


def test_failure_after_advancing_resumes_from_that_stage(session_factory, registry, clock, job):
    job_id, analysis_id = job
    first = ScriptedPipeline(failures=1, stages=("Checking clauses",))
    runner = AnalysisJobRunner(session_factory, registry, first, clock=clock)
    assert runner.run(job_id, analysis_id).action is Action.RETRY
    assert load(session_factory, analysis_id).status == AnalysisStatus.ANALYSING.value

    second = ScriptedPipeline()
    runner = AnalysisJobRunner(session_factory, registry, second, clock=clock)
    outcome = runner.run(job_id, analysis_id)

    assert (outcome.action, outcome.attempt) == (Action.COMPLETE, 2)
    assert second.seen == [AnalysisStatus.ANALYSING]


def test_stalled_delivery_is_logged_and_counted(session_factory, registry, clock, job, caplog):
    job_id, analysis_id = job
    registry.claim(job_id, analysis_id)  # a worker took it and died
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(), clock=clock)

    with caplog.at_level(logging.WARNING):
        outcome = runner.run(job_id, analysis_id)

    assert (outcome.action, outcome.attempt) == (Action.COMPLETE, 2)
    assert any("stalled" in r.getMessage() for r in caplog.records)


def test_stalls_past_the_attempt_budget_fail_the_record(session_factory, registry, clock, job):
    job_id, analysis_id = job
    for _ in range(3):
        registry.claim(job_id, analysis_id)
    pipeline = ScriptedPipeline()
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)

    outcome = runner.run(job_id, analysis_id)

    assert outcome.action is Action.FAIL
    assert isinstance(outcome.error, JobStalledError)
    assert pipeline.calls == 0
    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.FAILED.value
    assert row.current_stage.startswith("Failed: Job stalled")


def test_redelivery_of_finished_job_is_skipped(session_factory, registry, clock, job):
    job_id, analysis_id = job
    pipeline = ScriptedPipeline()
    runner = AnalysisJobRunner(session_factory, registry, pipeline, clock=clock)
    assert runner.run(job_id, analysis_id).action is Action.COMPLETE
    completed_at = load(session_factory, analysis_id).completed_at

    clock.advance(600)
    outcome = runner.run(job_id, analysis_id)

    assert outcome.action is Action.SKIP
    assert pipeline.calls == 1
    assert load(session_factory, analysis_id).completed_at == completed_at
    assert registry.get(job_id).state == "completed"


def test_missing_record_fails_without_retry(session_factory, registry, clock):
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(), clock=clock)

    outcome = runner.run("analysis-missing", "missing")

    assert outcome.action is Action.FAIL
    assert isinstance(outcome.error, AnalysisNotFoundError)
    assert registry.get("analysis-missing").state == "failed"


def test_custom_policy_controls_budget_and_delays(session_factory, registry, clock, job):
    job_id, analysis_id = job
    policy = RetryPolicy(max_attempts=2, backoff_schedule=(5,))
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(failures=99), policy, clock=clock)

    outcomes = drive(runner, clock, job_id, analysis_id)

    assert [o.action for o in outcomes] == [Action.RETRY, Action.FAIL]
    assert clock.elapsed == 5


class FailedElsewhere:
    """Another delivery fails the record while this one is still running."""

    def __init__(self, clock):
        self.clock = clock

    def run(self, ctx):
        analyses.mark_failed(ctx.db, ctx.analysis.id, "Failed: cancelled", self.clock())


def test_record_finished_elsewhere_is_not_reported_complete(session_factory, registry, clock, job):
    job_id, analysis_id = job
    runner = AnalysisJobRunner(session_factory, registry, FailedElsewhere(clock), clock=clock)

    outcome = runner.run(job_id, analysis_id)

    assert outcome.action is Action.SKIP
    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.FAILED.value
    assert row.current_stage == "Failed: cancelled"
    assert registry.get(job_id).state == "failed"


def test_error_before_last_attempt_releases_job_for_retry(session_factory, registry, clock, job):
    job_id, analysis_id = job
    registry.claim(job_id, analysis_id)
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(), clock=clock)
    error = OperationalError("SELECT 1", {}, Exception("connection refused"))

    outcome = runner.on_error(job_id, analysis_id, 1, error)

    assert (outcome.action, outcome.delay, outcome.error) == (Action.RETRY, 30, error)
    assert registry.get(job_id).state == "delayed"
    assert load(session_factory, analysis_id).status == AnalysisStatus.PENDING.value


def test_error_on_last_attempt_fails_record_and_job(session_factory, registry, clock, job):
    job_id, analysis_id = job
    registry.claim(job_id, analysis_id)
    runner = AnalysisJobRunner(session_factory, registry, ScriptedPipeline(), clock=clock)

    outcome = runner.on_error(job_id, analysis_id, 3, StorageError("registry timeout"))

    assert outcome.action is Action.FAIL
    row = load(session_factory, analysis_id)
    assert row.status == AnalysisStatus.FAILED.value
    assert row.current_stage == "Failed: registry timeout"
    info = registry.get(job_id)
    assert (info.state, info.last_error) == ("failed", "registry timeout")
