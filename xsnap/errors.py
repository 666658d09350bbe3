"""Error taxonomy shared by the store, worker, and capture layers."""

from __future__ import annotations

__all__ = [
    "XsnapError",
    "ValidationError",
    "StaleTransition",
    "JobNotFound",
    "CaptureFailure",
    "StoreUnavailable",
]


class XsnapError(Exception):
    """Base class for every error raised by xsnap."""


class ValidationError(XsnapError, ValueError):
    """Bad input to a store or admission operation. Never retried."""


class StaleTransition(XsnapError):
    """A conditional state update found the job in an unexpected status."""

    def __init__(self, job_id: str, *, expected: str, actual: str | None) -> None:
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Job {job_id} is {actual or 'missing'}, expected {expected}")


class JobNotFound(XsnapError, KeyError):
    """No job exists with the requested id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

    def __str__(self) -> str:  # KeyError would repr() the message
        return str(self.args[0])


class CaptureFailure(XsnapError):
    """The capture executor could not produce artifacts for a target."""


class StoreUnavailable(XsnapError):
    """Transient persistence failure (locked or unreachable database)."""
