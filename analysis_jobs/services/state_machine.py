"""
Status transitions for an analysis, keyed by (current status, event).

The worker is the only writer after creation; every status change it makes
goes through `next_transition`, so attempt counting and terminal failure are
decided here and nowhere else.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass

from analysis_jobs.core.errors import InvalidTransitionError
from analysis_jobs.models.analysis import AnalysisStatus


class JobEvent(str, enum.Enum):
    PICKED_UP = "picked_up"
    STAGE_ADVANCED = "stage_advanced"
    SUCCEEDED = "succeeded"
    ATTEMPT_FAILED = "attempt_failed"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


class Action(str, enum.Enum):
    START = "start"  # first pickup: set started_at
    RESUME = "resume"  # redelivery of a job already in progress
    ADVANCE = "advance"
    COMPLETE = "complete"
    RETRY = "retry"  # status untouched, broker redelivers after backoff
    FAIL = "fail"
    SKIP = "skip"  # record already terminal


@dataclass(frozen=True)
class Transition:
    action: Action
    target: AnalysisStatus | None = None  # None: status unchanged


PROCESSING_STAGES: tuple[AnalysisStatus, ...] = (
    AnalysisStatus.CLASSIFYING,
    AnalysisStatus.ANALYSING,
    AnalysisStatus.VALIDATING,
    AnalysisStatus.GENERATING,
)

TERMINAL_STATUSES = frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.FAILED})


def _build_table() -> dict[tuple[AnalysisStatus, JobEvent], Transition]:
    table: dict[tuple[AnalysisStatus, JobEvent], Transition] = {
        (AnalysisStatus.PENDING, JobEvent.PICKED_UP): Transition(Action.START, AnalysisStatus.CLASSIFYING),
        (AnalysisStatus.PENDING, JobEvent.ATTEMPT_FAILED): Transition(Action.RETRY),
        (AnalysisStatus.PENDING, JobEvent.ATTEMPTS_EXHAUSTED): Transition(Action.FAIL, AnalysisStatus.FAILED),
    }

    for i, stage in enumerate(PROCESSING_STAGES):
        table[(stage, JobEvent.PICKED_UP)] = Transition(Action.RESUME)
        if i + 1 < len(PROCESSING_STAGES):
            table[(stage, JobEvent.STAGE_ADVANCED)] = Transition(Action.ADVANCE, PROCESSING_STAGES[i + 1])
        table[(stage, JobEvent.SUCCEEDED)] = Transition(Action.COMPLETE, AnalysisStatus.COMPLETED)
        table[(stage, JobEvent.ATTEMPT_FAILED)] = Transition(Action.RETRY)
        table[(stage, JobEvent.ATTEMPTS_EXHAUSTED)] = Transition(Action.FAIL, AnalysisStatus.FAILED)

    for status in TERMINAL_STATUSES:
        for event in JobEvent:
            table[(status, event)] = Transition(Action.SKIP)

    return table


TRANSITIONS = _build_table()


def next_transition(status: AnalysisStatus | str, event: JobEvent) -> Transition:
    try:
        key = (AnalysisStatus(status), event)
        return TRANSITIONS[key]
    except (KeyError, ValueError):
        raise InvalidTransitionError(f"No transition from {status} on {event.value}") from None


def failure_event(attempt: int, max_attempts: int) -> JobEvent:
    """A failed attempt only becomes terminal once the attempt budget is spent."""
    return JobEvent.ATTEMPTS_EXHAUSTED if attempt >= max_attempts else JobEvent.ATTEMPT_FAILED


def is_terminal(status: AnalysisStatus | str) -> bool:
    return AnalysisStatus(status) in TERMINAL_STATUSES
