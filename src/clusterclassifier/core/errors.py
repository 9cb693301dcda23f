"""Error taxonomy for reconciliation."""

from __future__ import annotations


class ClassifierError(Exception):
    """Base class for every error raised by this package."""


class ApiError(ClassifierError):
    """A call against a cluster API failed."""

    def __init__(self, message: str, *, reason: str = "api_error", rc: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.rc = rc
        self.stderr = stderr


class NotFoundError(ApiError):
    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("reason", "not_found")
        super().__init__(message, **kwargs)


class ConflictError(ApiError):
    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("reason", "conflict")
        super().__init__(message, **kwargs)


class InProgressError(ClassifierError):
    """Admission refused because work for the same pair is in flight.

    Always recoverable: the caller requeues after the fixed interval.
    """


class NotConvergedError(ClassifierError):
    """One or more clusters have not reached the desired state yet."""


class InvalidEndpointError(ClassifierError, ValueError):
    pass


class MalformedReportError(ClassifierError):
    pass
