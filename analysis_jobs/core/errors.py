from __future__ import annotations


class AnalysisJobsError(Exception):
    """Base class for errors raised by the orchestration core."""


class ConfigurationError(AnalysisJobsError):
    """Missing or malformed configuration. Fatal at startup, never retried."""


class StorageConfigurationError(ConfigurationError):
    pass


class StorageError(AnalysisJobsError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ObjectNotFoundError(StorageError):
    pass


class StorageWriteError(StorageError):
    pass


class QueueUnavailableError(AnalysisJobsError):
    """The broker could not accept the job. Callers may retry the enqueue."""


class InvalidTransitionError(AnalysisJobsError):
    pass


class ReferenceGenerationError(AnalysisJobsError):
    pass


class AnalysisNotFoundError(AnalysisJobsError):
    pass


class JobStalledError(AnalysisJobsError):
    """A job kept outliving its lock until the attempt budget ran out."""
