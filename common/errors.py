"""Error taxonomy shared by the execution engine, the stores and the worker.

Every error raised while running a job derives from ``JobError``. The worker
catches them once, at the job boundary, and records ``str(exc)`` verbatim as
the job's ``error`` text.
"""

from typing import Iterable, Optional


class JobError(Exception):
    """Base class for all job processing failures."""


class ConfigurationError(JobError):
    """Raised when a required setting (e.g. the provider key) is missing."""


class ValidationError(JobError):
    """A job payload is missing required fields or has malformed values."""

    def __init__(self, operation: str, missing: Iterable[str] = (), detail: Optional[str] = None):
        self.operation = operation
        self.missing = list(missing)
        if self.missing:
            message = f"{operation} requires {', '.join(self.missing)}"
        else:
            message = f"{operation} payload is invalid"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnknownOperation(JobError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Unknown operation {operation}")


class ProviderError(JobError):
    """Non-success HTTP status from a provider submit/execute call."""

    def __init__(self, status: Optional[int], detail: str = "", message: Optional[str] = None):
        self.status = status
        self.detail = detail
        if message is None:
            message = f"fal.run HTTP {status}"
            if detail:
                message = f"{message}: {detail}"
        super().__init__(message)


class ImageFetchError(JobError):
    def __init__(self, status: int, url: str = ""):
        self.status = status
        self.url = url
        super().__init__(f"image fetch HTTP {status}")


class MissingImageError(JobError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"fal {operation} response missing image")


class ProtocolError(JobError):
    """The queue API answered with a shape we cannot continue from."""


class PollExhaustedError(JobError):
    def __init__(self, operation: str, errors: int, last_error: str = ""):
        self.operation = operation
        self.errors = errors
        message = f"{operation} polling aborted after {errors} consecutive errors"
        if last_error:
            message = f"{message} (last: {last_error})"
        super().__init__(message)


class PollTimeoutError(JobError):
    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} did not complete after {attempts} status checks")


class ProviderJobFailedError(JobError):
    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed at provider"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StoreError(JobError):
    """Persistence or object-store failure."""


class ExecutionFailure(JobError):
    """Single failure shape surfaced by the execution engine."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(message)
